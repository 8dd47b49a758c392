"""
Running strategy API routes (user side)
"""

from fastapi import APIRouter, Depends

from copytrade.core.dependencies import get_current_active_user, get_registry
from copytrade.models.strategy import ModificationRequest, RunningStrategyView
from copytrade.models.user import User
from copytrade.services.running_strategy_registry import RunningStrategyRegistry

router = APIRouter()


@router.get("", response_model=list[RunningStrategyView])
async def list_running_strategies(
    current_user: User = Depends(get_current_active_user),
    registry: RunningStrategyRegistry = Depends(get_registry),
):
    return await registry.list_for_user(current_user.id)


@router.post("/{instance_id}/modification", response_model=RunningStrategyView)
async def request_modification(
    instance_id: str,
    data: ModificationRequest,
    current_user: User = Depends(get_current_active_user),
    registry: RunningStrategyRegistry = Depends(get_registry),
):
    """Change trading account credentials; the strategy goes back to verification."""
    return await registry.apply_modification(
        instance_id, data.model_dump(exclude_none=True), requested_by=current_user.id
    )
