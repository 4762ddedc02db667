"""
Admin API Routes - Manual financial interventions.

Admin role is checked against the caller's profile by the workflow itself,
after authentication and before any input is inspected.
"""

from fastapi import APIRouter, Depends

from entitlements.api.dependencies import get_current_caller, get_refund_workflow
from entitlements.models.api import RefundRequest, RefundResponse
from entitlements.models.domain import CallerIdentity
from entitlements.services.refund import RefundWorkflow

router = APIRouter()


@router.post("/refund-last-payment", response_model=RefundResponse)
async def refund_last_payment(
    request: RefundRequest | None = None,
    caller: CallerIdentity | None = Depends(get_current_caller),
    workflow: RefundWorkflow = Depends(get_refund_workflow),
) -> RefundResponse:
    """
    Refund a user's most recent web payment and revoke their entitlement.

    Only allowed for canceled or pending-cancellation subscriptions.
    """
    result = await workflow.refund_last_payment(caller, request.user_id if request else None)
    return RefundResponse(
        success=True,
        refund_id=result.refund_id,
        amount=result.amount_major,
        currency=result.currency,
        status=result.status,
    )
