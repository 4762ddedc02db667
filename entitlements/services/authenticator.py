"""
Event Authenticator - Credential and role checks for every entry point.

Security modes:
- AGGREGATOR_WEBHOOK: shared bearer secret configured for RevenueCat
- ADMIN_OPERATION: session token whose profile role is "admin"
- SELF_SERVICE: session token for the target user, or an admin
- USER_SYNC: any valid session token; the caller is the target
"""

import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Protocol

import jwt
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from entitlements.db.models import Profile
from entitlements.exceptions import (
    ForbiddenError,
    UnauthenticatedError,
    UpstreamFailureError,
    WebhookSecretNotConfiguredError,
)
from entitlements.models.domain import CallerIdentity

logger = get_logger(__name__)

ADMIN_ROLE = "admin"


class SecurityMode(str, Enum):
    """How an inbound request must prove it is allowed."""

    AGGREGATOR_WEBHOOK = "aggregator_webhook"
    ADMIN_OPERATION = "admin_operation"
    SELF_SERVICE = "self_service"
    USER_SYNC = "user_sync"


@dataclass(frozen=True)
class Authorization:
    """Proof that a request passed its security mode."""

    mode: SecurityMode
    caller_id: str | None
    target_user_id: str | None
    is_admin: bool = False


def bearer_token(authorization_header: str | None) -> str | None:
    """Extract the token from an `Authorization: Bearer <token>` header."""
    if not authorization_header:
        return None
    scheme, _, token = authorization_header.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


# ============================================================================
# Aggregator webhook authentication
# ============================================================================


class WebhookAuthenticator(Protocol):
    """Checks the credential an aggregator sends with each delivery."""

    def authorize(self, authorization_header: str | None) -> Authorization: ...


class SharedSecretAuthenticator:
    """Accepts deliveries whose bearer credential equals the configured secret."""

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("SharedSecretAuthenticator requires a non-empty secret")
        self._expected = f"Bearer {secret}"

    def authorize(self, authorization_header: str | None) -> Authorization:
        presented = authorization_header or ""
        if not secrets.compare_digest(presented.encode(), self._expected.encode()):
            logger.warning("webhook_secret_mismatch", header_present=bool(authorization_header))
            raise UnauthenticatedError("Invalid webhook secret")
        return Authorization(
            mode=SecurityMode.AGGREGATOR_WEBHOOK, caller_id=None, target_user_id=None
        )


class UnconfiguredWebhookAuthenticator:
    """Rejects every delivery: no secret was configured."""

    def authorize(self, authorization_header: str | None) -> Authorization:
        logger.error("webhook_rejected_secret_not_configured")
        raise WebhookSecretNotConfiguredError()


def build_webhook_authenticator(secret: str | None) -> WebhookAuthenticator:
    """Build the webhook authenticator from configuration (fail closed)."""
    if not secret:
        return UnconfiguredWebhookAuthenticator()
    return SharedSecretAuthenticator(secret)


# ============================================================================
# Session tokens
# ============================================================================


class SessionTokenVerifier:
    """Verifies HS256 session JWTs issued by the auth provider."""

    def __init__(self, jwt_secret: str, audience: str = "authenticated") -> None:
        self.jwt_secret = jwt_secret
        self.audience = audience

    def verify(self, token: str | None) -> CallerIdentity:
        """
        Resolve the caller from a session token.

        Raises:
            UnauthenticatedError: missing, expired or invalid token, or no
                verification secret configured
        """
        if not token:
            raise UnauthenticatedError("Authorization header required")

        if not self.jwt_secret:
            logger.error("session_verification_not_configured")
            raise UnauthenticatedError("Session verification is not configured")

        try:
            payload = jwt.decode(
                token,
                self.jwt_secret,
                algorithms=["HS256"],
                audience=self.audience,
            )
        except jwt.ExpiredSignatureError as exc:
            logger.warning("session_token_expired")
            raise UnauthenticatedError("Token expired") from exc
        except jwt.InvalidTokenError as exc:
            logger.warning("session_token_invalid", error=str(exc))
            raise UnauthenticatedError("Invalid token") from exc

        user_id = payload.get("sub")
        if not user_id:
            raise UnauthenticatedError("Invalid token: missing user ID")

        return CallerIdentity(user_id=str(user_id), email=payload.get("email"))


# ============================================================================
# Role checks
# ============================================================================


class RoleLookup(Protocol):
    """Source of a user's stored role."""

    async def get_role(self, user_id: str) -> str | None: ...


class ProfileRoleLookup:
    """Reads roles from the profiles table."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_role(self, user_id: str) -> str | None:
        try:
            result = await self.session.execute(select(Profile.role).where(Profile.id == user_id))
        except SQLAlchemyError as exc:
            logger.error("role_lookup_failed", user_id=user_id, error=str(exc))
            raise UpstreamFailureError("role lookup", str(exc)) from exc
        role: str | None = result.scalar_one_or_none()
        return role


class CallerAuthorizer:
    """Applies the caller-based security modes to a resolved identity."""

    def __init__(self, roles: RoleLookup) -> None:
        self.roles = roles

    async def is_admin(self, user_id: str) -> bool:
        return await self.roles.get_role(user_id) == ADMIN_ROLE

    async def authorize(
        self,
        mode: SecurityMode,
        caller: CallerIdentity | None,
        target_user_id: str | None = None,
    ) -> Authorization:
        """
        Authorize a resolved caller for a mode.

        Raises:
            UnauthenticatedError: no caller
            ForbiddenError: caller lacks the role or ownership the mode needs
        """
        if caller is None:
            raise UnauthenticatedError("Not authenticated")

        if mode == SecurityMode.AGGREGATOR_WEBHOOK:
            raise ValueError("Aggregator webhooks are authorized by WebhookAuthenticator")

        if mode == SecurityMode.USER_SYNC:
            if target_user_id is not None and target_user_id != caller.user_id:
                logger.warning(
                    "user_sync_target_mismatch", caller_id=caller.user_id, target=target_user_id
                )
                raise ForbiddenError(caller.user_id, "sync another user's subscription")
            return Authorization(mode=mode, caller_id=caller.user_id, target_user_id=caller.user_id)

        if mode == SecurityMode.SELF_SERVICE and target_user_id == caller.user_id:
            return Authorization(mode=mode, caller_id=caller.user_id, target_user_id=target_user_id)

        if not await self.is_admin(caller.user_id):
            logger.warning(
                "caller_not_admin",
                caller_id=caller.user_id,
                mode=mode.value,
                target=target_user_id,
            )
            action = (
                "perform admin operations"
                if mode == SecurityMode.ADMIN_OPERATION
                else "access another user's subscription"
            )
            raise ForbiddenError(caller.user_id, action)

        return Authorization(
            mode=mode, caller_id=caller.user_id, target_user_id=target_user_id, is_admin=True
        )


class EventAuthenticator:
    """
    Single entry point: credential material + security mode -> Authorization.

    Webhook secrets and session tokens are injected at construction.
    """

    def __init__(
        self,
        webhook: WebhookAuthenticator,
        sessions: SessionTokenVerifier,
        callers: CallerAuthorizer,
    ) -> None:
        self.webhook = webhook
        self.sessions = sessions
        self.callers = callers

    async def authorize(
        self,
        mode: SecurityMode,
        authorization_header: str | None,
        target_user_id: str | None = None,
    ) -> Authorization:
        if mode == SecurityMode.AGGREGATOR_WEBHOOK:
            return self.webhook.authorize(authorization_header)

        caller = self.sessions.verify(bearer_token(authorization_header))
        return await self.callers.authorize(mode, caller, target_user_id)
