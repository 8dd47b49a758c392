"""
User models: User and its API projections
"""

from sqlalchemy import DateTime
from sqlmodel import SQLModel, Field
from typing import Optional
from datetime import datetime
from decimal import Decimal
from enum import Enum

from copytrade.models.common import new_id, utcnow


# ============================================================================
# ENUMS
# ============================================================================

class UserRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"


# ============================================================================
# USER MODEL
# ============================================================================

class User(SQLModel, table=True):
    """Account that owns wallet transactions and running strategies"""

    __tablename__ = "users"

    id: str = Field(default_factory=lambda: new_id("user"), primary_key=True, max_length=64)
    name: Optional[str] = Field(default=None, max_length=255)
    email: str = Field(unique=True, index=True, max_length=255)
    password_hash: str = Field(max_length=255)

    wallet_balance: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=2)

    role: str = Field(default=UserRole.USER.value, max_length=20)   # UserRole
    enabled: bool = Field(default=True)
    email_verified: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN.value


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class UserSummary(SQLModel):
    """User projection embedded in admin views (no credentials)"""
    id: str
    name: Optional[str]
    email: str
    wallet_balance: Decimal


class BalanceResponse(SQLModel):
    balance: Decimal
    currency: str = "USD"
    formatted: str


class UserAccountView(SQLModel):
    """Admin user listing"""
    id: str
    name: Optional[str]
    email: str
    role: str
    enabled: bool
    email_verified: bool
    wallet_balance: Decimal
    created_at: datetime


class UserAccountUpdate(SQLModel):
    """Admin edit; unset fields are left as they are"""
    name: Optional[str] = Field(default=None, max_length=255)
    role: Optional[UserRole] = None
    enabled: Optional[bool] = None
