"""
Strategy models: Strategy, RunningStrategy, RunningStrategyModification
Maps to: strategies, running_strategies, running_strategy_modifications
"""

from sqlalchemy import JSON, Column, DateTime, UniqueConstraint
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum

from copytrade.models.common import new_id, utcnow


# ============================================================================
# ENUMS
# ============================================================================

class RunningStatus(str, Enum):
    IN_PROCESS = "in-process"
    ACTIVE = "active"
    STOPPED = "stopped"


class AdminStatus(str, Enum):
    IN_PROCESS = "in-process"
    WRONG_ACCOUNT_PASSWORD = "wrong-account-password"
    WRONG_ACCOUNT_ID = "wrong-account-id"
    WRONG_ACCOUNT_SERVER_NAME = "wrong-account-server-name"
    RUNNING = "running"


ADMIN_STATUS_VALUES = frozenset(s.value for s in AdminStatus)
VISIBLE_RUNNING_STATUSES = frozenset({RunningStatus.IN_PROCESS.value, RunningStatus.ACTIVE.value})


# ============================================================================
# STRATEGY MODEL
# ============================================================================

class Strategy(SQLModel, table=True):
    """Catalogue entry. Only the display fields live here."""
    __tablename__ = "strategies"

    id: str = Field(default_factory=lambda: new_id("strat"), primary_key=True, max_length=64)
    name: str = Field(max_length=255)
    description: Optional[str] = None
    risk_level: Optional[str] = Field(default=None, max_length=20)
    enabled: bool = Field(default=True)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# ============================================================================
# RUNNING STRATEGY MODEL
# ============================================================================

class RunningStrategy(SQLModel, table=True):
    """A strategy deployed for one user, at most one per (user, strategy)"""
    __tablename__ = "running_strategies"
    __table_args__ = (UniqueConstraint("user_id", "strategy_id", name="uniq_user_strategy"),)

    id: str = Field(default_factory=lambda: new_id("run"), primary_key=True, max_length=64)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=64)
    strategy_id: str = Field(max_length=64)
    plan: Optional[str] = Field(default=None, max_length=20)
    capital: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)

    status: str = Field(default=RunningStatus.IN_PROCESS.value, max_length=20)       # RunningStatus
    admin_status: str = Field(default=AdminStatus.IN_PROCESS.value, max_length=40)   # AdminStatus

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


class RunningStrategyModification(SQLModel, table=True):
    """Audit row for a credential change request on a running strategy"""
    __tablename__ = "running_strategy_modifications"

    id: str = Field(default_factory=lambda: new_id("mod"), primary_key=True, max_length=64)
    running_strategy_id: str = Field(index=True, max_length=64)
    user_id: str = Field(max_length=64)

    platform: Optional[str] = Field(default=None, max_length=10)
    mt_account_id: Optional[str] = Field(default=None, max_length=100)
    mt_account_password: Optional[str] = Field(default=None, max_length=255)
    mt_account_server: Optional[str] = Field(default=None, max_length=255)
    status: str = Field(default=AdminStatus.IN_PROCESS.value, max_length=40)
    new_update_json: Optional[dict] = Field(default=None, sa_column=Column(JSON))

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class AdminStatusUpdate(SQLModel):
    admin_status: AdminStatus


class ModificationRequest(SQLModel):
    """Credential change; unset fields are left as they are"""
    platform: Optional[str] = Field(default=None, max_length=10)
    mt_account_id: Optional[str] = Field(default=None, max_length=100)
    mt_account_password: Optional[str] = Field(default=None, max_length=255)
    mt_account_server: Optional[str] = Field(default=None, max_length=255)


class RunningStrategyView(SQLModel):
    """Hydrated projection: instance + strategy name + owner + latest credentials"""
    id: str
    user_id: str
    strategy_id: str
    strategy_name: Optional[str] = None
    user_name: Optional[str] = None
    user_email: Optional[str] = None
    plan: Optional[str] = None
    capital: Optional[Decimal] = None
    status: str
    admin_status: str
    platform: Optional[str] = None
    mt_account_id: Optional[str] = None
    mt_account_server: Optional[str] = None
    created_at: datetime
    updated_at: datetime
