"""
Exception Classes - Strongly typed exception hierarchy.

Every error carries a machine-readable code and the HTTP status it maps to,
so the API boundary never has to guess how to render it.
"""


class EntitlementError(Exception):
    """Base exception for all entitlement errors."""

    code: str = "entitlement_error"
    status_code: int = 500

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    @property
    def public_message(self) -> str:
        """Message safe to return to the caller."""
        return self.message


class UnauthenticatedError(EntitlementError):
    """Raised when the caller identity is missing or cannot be resolved."""

    code = "unauthenticated"
    status_code = 401

    def __init__(self, reason: str = "Not authenticated") -> None:
        self.reason = reason
        super().__init__(f"Authentication failed: {reason}")


class ForbiddenError(EntitlementError):
    """Raised when an authenticated caller is not permitted to act."""

    code = "forbidden"
    status_code = 403

    def __init__(self, caller_id: str, action: str) -> None:
        self.caller_id = caller_id
        self.action = action
        super().__init__(f"Caller {caller_id} is not permitted to {action}")


class InvalidInputError(EntitlementError):
    """Raised when a request is malformed or misses a required field."""

    code = "invalid_input"
    status_code = 400

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"Invalid {field}: {reason}")


class InvalidStateError(EntitlementError):
    """Raised when the current entitlement or charge does not meet a precondition."""

    code = "invalid_state"
    status_code = 400

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


class NotFoundError(EntitlementError):
    """Raised when a referenced user, customer or charge does not exist."""

    code = "not_found"
    status_code = 404

    def __init__(self, resource: str, identifier: str) -> None:
        self.resource = resource
        self.identifier = identifier
        super().__init__(f"{resource} not found: {identifier}")


class UpstreamFailureError(EntitlementError):
    """Raised when the storage layer or billing processor call fails."""

    code = "upstream_failure"
    status_code = 500

    def __init__(self, operation: str, detail: str) -> None:
        self.operation = operation
        self.detail = detail
        super().__init__(f"{operation} failed: {detail}")

    @property
    def public_message(self) -> str:
        # Storage and processor details stay in the logs
        return f"{self.operation} failed"


class BillingProviderUnavailableError(UpstreamFailureError):
    """Raised by a billing processor capability that could not be initialized."""

    code = "provider_unavailable"
    status_code = 503

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} billing", f"provider unavailable ({reason})")

    @property
    def public_message(self) -> str:
        return f"{self.provider} billing is unavailable"


class WebhookSecretNotConfiguredError(EntitlementError):
    """Raised for every aggregator webhook when no shared secret is configured."""

    code = "webhook_secret_not_configured"
    status_code = 500

    def __init__(self) -> None:
        super().__init__("Webhook secret is not configured; rejecting request")


class WebhookVerificationError(EntitlementError):
    """Raised when a provider webhook signature cannot be verified."""

    code = "webhook_verification_failed"
    status_code = 400

    def __init__(self, provider: str, reason: str) -> None:
        self.provider = provider
        self.reason = reason
        super().__init__(f"{provider} webhook verification failed: {reason}")
