"""
FastAPI dependencies: service wiring and the authentication seam.
"""

from typing import Optional
import logging

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
import jwt

from copytrade.core.security import decode_access_token
from copytrade.models.user import User
from copytrade.services.notifier import Notifier, get_notifier
from copytrade.services.record_store import RecordStore
from copytrade.services.running_strategy_registry import RunningStrategyRegistry
from copytrade.services.sync_reconciler import SyncReconciler
from copytrade.services.transaction_lifecycle import TransactionLifecycle
from copytrade.services.user_admin import UserAdmin
from copytrade.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

bearer_scheme = HTTPBearer(auto_error=False)


def install_services(app: FastAPI, store: RecordStore, notifier: Optional[Notifier] = None) -> None:
    """Build the service graph once per process and hang it on app.state."""
    ledger = WalletLedger(store)
    registry = RunningStrategyRegistry(store)
    reconciler = SyncReconciler(store)

    app.state.record_store = store
    app.state.ledger = ledger
    app.state.registry = registry
    app.state.reconciler = reconciler
    app.state.user_admin = UserAdmin(store)
    app.state.lifecycle = TransactionLifecycle(
        store, ledger, registry, reconciler, notifier or get_notifier()
    )


def get_record_store(request: Request) -> RecordStore:
    return request.app.state.record_store


def get_ledger(request: Request) -> WalletLedger:
    return request.app.state.ledger


def get_registry(request: Request) -> RunningStrategyRegistry:
    return request.app.state.registry


def get_reconciler(request: Request) -> SyncReconciler:
    return request.app.state.reconciler


def get_lifecycle(request: Request) -> TransactionLifecycle:
    return request.app.state.lifecycle


def get_user_admin(request: Request) -> UserAdmin:
    return request.app.state.user_admin


# ============================================================================
# AUTHENTICATION
# ============================================================================

async def user_from_token(token: str, store: RecordStore) -> User:
    try:
        payload = decode_access_token(token)
    except jwt.ExpiredSignatureError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token expired")
    except jwt.InvalidTokenError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user_id = payload.get("sub") or payload.get("id")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")

    user = await store.find(User, str(user_id))
    if user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User not found")
    return user


async def get_current_user(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
    store: RecordStore = Depends(get_record_store),
) -> User:
    if credentials is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return await user_from_token(credentials.credentials, store)


async def get_current_active_user(current_user: User = Depends(get_current_user)) -> User:
    if not current_user.enabled:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Account disabled")
    return current_user


async def require_admin(current_user: User = Depends(get_current_active_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return current_user
