# backend/copytrade/api/admin.py
from fastapi import APIRouter, Depends, Request
from typing import Optional

from copytrade.core.config import settings
from copytrade.core.dependencies import (
    get_lifecycle,
    get_reconciler,
    get_record_store,
    get_registry,
    get_user_admin,
    require_admin,
)
from copytrade.core.security import limiter
from copytrade.models.strategy import (
    AdminStatus,
    AdminStatusUpdate,
    ModificationRequest,
    RunningStrategyModification,
    RunningStrategyView,
)
from copytrade.models.user import User, UserAccountUpdate, UserAccountView, UserRole, UserSummary
from copytrade.models.wallet import (
    ApproveRequest,
    MessageRequest,
    RejectRequest,
    TransactionDecision,
    TransactionStatus,
)
from copytrade.services.analytics import dashboard_summary
from copytrade.services.record_store import RecordStore
from copytrade.services.running_strategy_registry import RunningStrategyRegistry
from copytrade.services.sync_reconciler import SyncReconciler
from copytrade.services.transaction_lifecycle import TransactionLifecycle, TransitionResult
from copytrade.services.user_admin import UserAdmin

router = APIRouter(prefix="/admin", tags=["Admin"])


def transition_response(result: TransitionResult) -> dict:
    return {
        "success": True,
        "applied": result.applied,
        "credit_pending": result.credit_pending,
        "transaction": result.transaction,
        "user": UserSummary.model_validate(result.user) if result.user else None,
    }


# ============================================================================
# PAYMENTS
# ============================================================================

@router.get("/payments/pending")
async def pending_payments(
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
    admin: User = Depends(require_admin),
):
    """Payments waiting for review (pending or in-process)"""
    return await lifecycle.list_for_review([TransactionStatus.PENDING, TransactionStatus.IN_PROCESS])


@router.get("/payments/approved")
async def approved_payments(
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
    admin: User = Depends(require_admin),
):
    return await lifecycle.list_for_review([TransactionStatus.COMPLETED])


@router.get("/payments/rejected")
async def rejected_payments(
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
    admin: User = Depends(require_admin),
):
    return await lifecycle.list_for_review([TransactionStatus.FAILED])


@router.post("/payments/retry-credits")
async def retry_credits(
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
    admin: User = Depends(require_admin),
):
    """Re-attempt wallet credits that failed after approval"""
    results = await lifecycle.retry_pending_credits()
    return {
        "success": True,
        "credited": sum(1 for r in results if r.applied),
        "still_pending": [r.transaction.id for r in results if r.credit_pending],
    }


@router.post("/payments/{transaction_id}/approve")
@limiter.limit(settings.RATE_LIMIT_ADMIN)
async def approve_payment(
    request: Request,
    transaction_id: str,
    data: Optional[ApproveRequest] = None,
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
    admin: User = Depends(require_admin),
):
    """Approve a payment and credit the user's wallet once"""
    amount = data.amount if data else None
    result = await lifecycle.approve(transaction_id, admin.id, amount)
    return transition_response(result)


@router.post("/payments/{transaction_id}/reject")
@limiter.limit(settings.RATE_LIMIT_ADMIN)
async def reject_payment(
    request: Request,
    transaction_id: str,
    data: Optional[RejectRequest] = None,
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
    admin: User = Depends(require_admin),
):
    """Reject a payment and remove the running strategy it created"""
    reason = data.rejectionReason if data else None
    result = await lifecycle.reject(transaction_id, admin.id, reason)
    return {"success": True, "applied": result.applied, "transaction": result.transaction}


@router.post("/payments/{transaction_id}/message")
async def message_payment(
    transaction_id: str,
    data: MessageRequest,
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
    admin: User = Depends(require_admin),
):
    """Leave a message for the user without changing the payment status"""
    result = await lifecycle.send_message(transaction_id, admin.id, data.message)
    return {"success": True, "applied": result.applied, "transaction": result.transaction}


@router.put("/transactions/{transaction_id}")
async def decide_transaction(
    transaction_id: str,
    data: TransactionDecision,
    lifecycle: TransactionLifecycle = Depends(get_lifecycle),
    admin: User = Depends(require_admin),
):
    """Generic decision endpoint; accepts approved/completed/rejected/failed"""
    result = await lifecycle.decide(
        transaction_id, admin.id, data.status, amount=data.tokens, reason=data.rejectionReason
    )
    return transition_response(result)


# ============================================================================
# RUNNING STRATEGIES
# ============================================================================

@router.get("/running-strategies", response_model=list[RunningStrategyView])
async def list_running_strategies(
    admin_status: Optional[AdminStatus] = None,
    registry: RunningStrategyRegistry = Depends(get_registry),
    admin: User = Depends(require_admin),
):
    return await registry.list_admin(admin_status)


@router.get("/running-strategies/modifications", response_model=list[RunningStrategyModification])
async def list_modifications(
    running_strategy_id: Optional[str] = None,
    registry: RunningStrategyRegistry = Depends(get_registry),
    admin: User = Depends(require_admin),
):
    return await registry.list_modifications(running_strategy_id)


@router.patch("/running-strategies/{instance_id}/status")
async def update_admin_status(
    instance_id: str,
    data: AdminStatusUpdate,
    registry: RunningStrategyRegistry = Depends(get_registry),
    admin: User = Depends(require_admin),
):
    instance = await registry.set_admin_status(instance_id, data.admin_status)
    return {"success": True, "running_strategy": instance}


@router.patch("/running-strategies/{instance_id}/details", response_model=RunningStrategyView)
async def update_account_details(
    instance_id: str,
    data: ModificationRequest,
    registry: RunningStrategyRegistry = Depends(get_registry),
    admin: User = Depends(require_admin),
):
    """Correct the trading account details on the user's behalf"""
    return await registry.apply_modification(instance_id, data.model_dump(exclude_none=True))


# ============================================================================
# USERS
# ============================================================================

@router.get("/users", response_model=list[UserAccountView])
async def list_users(
    role: Optional[UserRole] = None,
    enabled: Optional[bool] = None,
    user_admin: UserAdmin = Depends(get_user_admin),
    admin: User = Depends(require_admin),
):
    return await user_admin.list_users(role=role, enabled=enabled)


@router.patch("/users/{user_id}", response_model=UserAccountView)
async def update_user(
    user_id: str,
    data: UserAccountUpdate,
    user_admin: UserAdmin = Depends(get_user_admin),
    admin: User = Depends(require_admin),
):
    """Change the name, role or enabled flag of an account"""
    return await user_admin.update_user(user_id, data, admin.id)


@router.get("/analytics")
async def analytics(
    store: RecordStore = Depends(get_record_store),
    admin: User = Depends(require_admin),
):
    return await dashboard_summary(store)


# ============================================================================
# MAINTENANCE
# ============================================================================

@router.post("/sync")
async def sync_users(
    reconciler: SyncReconciler = Depends(get_reconciler),
    admin: User = Depends(require_admin),
):
    """Copy fallback-only users into the relational store"""
    counts = await reconciler.reconcile_users()
    deletions = await reconciler.reconcile_deletions()
    return {"success": True, **counts, "deletions_applied": deletions}
