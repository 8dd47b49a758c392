"""
Wallet API routes
Balance, transaction history and new wallet transactions.
"""

from fastapi import APIRouter, Depends, Request, status

from copytrade.core.config import settings
from copytrade.core.dependencies import get_current_active_user, get_ledger, get_lifecycle
from copytrade.core.security import limiter
from copytrade.models.user import BalanceResponse, User
from copytrade.models.wallet import TransactionCreate, TransactionResponse
from copytrade.services.transaction_lifecycle import TransactionLifecycle
from copytrade.services.wallet_ledger import WalletLedger

router = APIRouter()


@router.get("/balance", response_model=BalanceResponse)
async def get_balance(
    current_user: User = Depends(get_current_active_user),
    ledger: WalletLedger = Depends(get_ledger),
):
    """Current wallet balance."""
    balance = await ledger.balance(current_user.id)
    return BalanceResponse(balance=balance, formatted=f"${balance:,.2f}")


@router.get("/transactions", response_model=list[TransactionResponse])
async def list_transactions(
    current_user: User = Depends(get_current_active_user),
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
):
    return await lifecycle.list_for_user(current_user.id)


@router.post("/transactions", response_model=TransactionResponse, status_code=status.HTTP_201_CREATED)
@limiter.limit(settings.RATE_LIMIT_PAYMENTS)
async def create_transaction(
    request: Request,
    data: TransactionCreate,
    current_user: User = Depends(get_current_active_user),
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
):
    """Submit a wallet transaction; it starts out pending admin review."""
    return await lifecycle.create(current_user.id, data)
