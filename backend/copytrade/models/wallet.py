"""
Wallet models: WalletTransaction and the payment request/response shapes
Maps to: wallet_transactions
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

class TransactionStatus(str, Enum):
    PENDING = "pending"
    IN_PROCESS = "in-process"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATUSES = frozenset({TransactionStatus.COMPLETED.value, TransactionStatus.FAILED.value})
OPEN_STATUSES = frozenset({TransactionStatus.PENDING.value, TransactionStatus.IN_PROCESS.value})


class TransactionType(str, Enum):
    DEPOSIT = "deposit"
    CHARGE = "charge"


class PlanLevel(str, Enum):
    PRO = "Pro"
    EXPERT = "Expert"
    PREMIUM = "Premium"


class Platform(str, Enum):
    MT4 = "MT4"
    MT5 = "MT5"


class CryptoNetwork(str, Enum):
    ERC20 = "ERC20"
    TRC20 = "TRC20"


class AdminMessageStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    RESOLVED = "resolved"


class PaymentMethod(str, Enum):
    UPI = "UPI"
    BANK_TRANSFER = "BANK_TRANSFER"
    USDT_ERC20 = "USDT_ERC20"
    USDT_TRC20 = "USDT_TRC20"


# ============================================================================
# WALLET TRANSACTION MODEL
# ============================================================================

class WalletTransaction(SQLModel, table=True):
    """A payment moving through pending -> in-process -> completed | failed"""
    __tablename__ = "wallet_transactions"

    id: str = Field(default_factory=lambda: new_id("trans"), primary_key=True, max_length=64)
    user_id: str = Field(foreign_key="users.id", index=True, max_length=64)
    strategy_id: Optional[str] = Field(default=None, index=True, max_length=64)
    plan_level: Optional[str] = Field(default=None, max_length=20)     # PlanLevel

    amount: Decimal = Field(max_digits=12, decimal_places=2)           # primary charge currency
    capital: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)
    transaction_type: str = Field(default=TransactionType.CHARGE.value, max_length=20)

    # Informational only, never drives the lifecycle
    inr_amount: Optional[Decimal] = Field(default=None, max_digits=14, decimal_places=2)
    inr_to_usd_rate: Optional[Decimal] = Field(default=None, max_digits=10, decimal_places=4)
    crypto_network: Optional[str] = Field(default=None, max_length=10)
    crypto_wallet_address: Optional[str] = Field(default=None, max_length=255)
    wallet_app_deeplink: Optional[str] = Field(default=None, max_length=500)

    payment_method: Optional[str] = Field(default=None, max_length=50)
    external_transaction_id: Optional[str] = Field(default=None, max_length=255)
    receipt_reference: Optional[str] = Field(default=None, max_length=500)

    platform: Optional[str] = Field(default=None, max_length=10)       # Platform
    mt_account_id: Optional[str] = Field(default=None, max_length=100)
    mt_account_password: Optional[str] = Field(default=None, max_length=255)
    mt_account_server: Optional[str] = Field(default=None, max_length=255)
    terms_accepted: bool = Field(default=False)

    status: str = Field(default=TransactionStatus.PENDING.value, index=True, max_length=20)
    admin_id: Optional[str] = Field(default=None, max_length=64)
    rejection_reason: Optional[str] = None
    admin_message: Optional[str] = None
    admin_message_status: Optional[str] = Field(default=None, max_length=20)

    credited_amount: Optional[Decimal] = Field(default=None, max_digits=12, decimal_places=2)
    credit_pending: bool = Field(default=False)

    created_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)
    updated_at: datetime = Field(default_factory=utcnow, sa_type=DateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ============================================================================
# REQUEST/RESPONSE MODELS
# ============================================================================

class AccountCredentials(SQLModel):
    """Trading account the strategy is deployed on"""
    platform: Optional[Platform] = None
    mt_account_id: Optional[str] = Field(default=None, max_length=100)
    mt_account_password: Optional[str] = Field(default=None, max_length=255)
    mt_account_server: Optional[str] = Field(default=None, max_length=255)


class PaymentProof(SQLModel):
    payment_method: Optional[str] = Field(default=None, max_length=50)
    external_transaction_id: Optional[str] = Field(default=None, max_length=255)
    receipt_reference: Optional[str] = Field(default=None, max_length=500)


class TransactionCreate(PaymentProof, AccountCredentials):
    """Wallet transaction submitted by the user"""
    amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    transaction_type: TransactionType = TransactionType.DEPOSIT
    strategy_id: Optional[str] = None
    plan_level: Optional[PlanLevel] = None
    capital: Optional[Decimal] = Field(default=None, ge=0)
    terms_accepted: bool = False


class CheckoutCreate(AccountCredentials):
    """Strategy checkout: creates a charge transaction before proof is uploaded"""
    strategy_id: str
    plan_level: PlanLevel
    payable_amount: Decimal = Field(gt=0, max_digits=12, decimal_places=2)
    capital: Optional[Decimal] = Field(default=None, ge=0)
    payment_method: PaymentMethod = PaymentMethod.UPI
    terms_accepted: bool = False


class ProofSubmission(PaymentProof, AccountCredentials):
    """Proof-of-payment upload for an existing transaction"""
    pass


class ApproveRequest(SQLModel):
    amount: Optional[Decimal] = Field(default=None, gt=0)


class RejectRequest(SQLModel):
    rejectionReason: Optional[str] = Field(default=None, max_length=1000)


class MessageRequest(SQLModel):
    message: str = Field(max_length=2000)


class TransactionDecision(SQLModel):
    """Generic admin decision; status is normalized before dispatch"""
    status: str
    tokens: Optional[Decimal] = Field(default=None, gt=0)
    rejectionReason: Optional[str] = Field(default=None, max_length=1000)


class TransactionResponse(SQLModel):
    id: str
    user_id: str
    strategy_id: Optional[str]
    plan_level: Optional[str]
    amount: Decimal
    capital: Optional[Decimal]
    transaction_type: str
    inr_amount: Optional[Decimal]
    inr_to_usd_rate: Optional[Decimal]
    crypto_network: Optional[str]
    crypto_wallet_address: Optional[str]
    wallet_app_deeplink: Optional[str]
    payment_method: Optional[str]
    external_transaction_id: Optional[str]
    receipt_reference: Optional[str]
    platform: Optional[str]
    mt_account_id: Optional[str]
    mt_account_server: Optional[str]
    status: str
    admin_id: Optional[str]
    rejection_reason: Optional[str]
    admin_message: Optional[str]
    admin_message_status: Optional[str]
    credited_amount: Optional[Decimal]
    credit_pending: bool
    created_at: datetime
    updated_at: datetime
