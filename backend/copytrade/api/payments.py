"""
Payment API routes
Strategy checkout and proof-of-payment upload.
"""

from fastapi import APIRouter, Depends, Request, status

from copytrade.core.config import settings
from copytrade.core.dependencies import get_current_active_user, get_lifecycle
from copytrade.core.security import limiter
from copytrade.models.user import User
from copytrade.models.wallet import CheckoutCreate, ProofSubmission, TransactionResponse
from copytrade.services.transaction_lifecycle import TransactionLifecycle

router = APIRouter()


@router.post("", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_PAYMENTS)
async def checkout(
    request: Request,
    data: CheckoutCreate,
    current_user: User = Depends(get_current_active_user),
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
):
    """Start a strategy purchase. INR and USDT details are informational."""
    return await lifecycle.checkout(current_user.id, data)


@router.put("/{transaction_id}/proof")
@limiter.limit(settings.RATE_LIMIT_PAYMENTS)
async def attach_proof(
    request: Request,
    transaction_id: str,
    proof: ProofSubmission,
    current_user: User = Depends(get_current_active_user),
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
):
    """Attach payment proof; the transaction moves to in-process."""
    result = await lifecycle.attach_proof(transaction_id, current_user.id, proof)
    return {
        "success": True,
        "applied": result.applied,
        "transaction": TransactionResponse.model_validate(result.transaction),
    }
