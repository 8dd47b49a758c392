"""
Transaction Lifecycle
State machine for wallet transactions and the side effects of each transition.

    pending -> in-process -> completed | failed
    pending -> failed

Every transition is a single conditional update guarded on the current
status. Losing that race, or asking again for a transition that already
happened, is reported as an idempotent success (applied=False) and never
repeats side effects.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional
import logging

from copytrade.core.config import settings
from copytrade.core.exceptions import (
    InvalidTransition,
    NotFound,
    StorageUnavailable,
    ValidationError,
)
from copytrade.core.redis import publish_event
from copytrade.models.common import enum_value
from copytrade.models.strategy import Strategy
from copytrade.models.user import User
from copytrade.models.wallet import (
    OPEN_STATUSES,
    AdminMessageStatus,
    CheckoutCreate,
    CryptoNetwork,
    PaymentMethod,
    ProofSubmission,
    TransactionCreate,
    TransactionStatus,
    TransactionType,
    WalletTransaction,
)
from copytrade.services import notifier as templates
from copytrade.services.notifier import NotificationError, Notifier
from copytrade.services.record_store import Guard, RecordStore
from copytrade.services.running_strategy_registry import RunningStrategyRegistry
from copytrade.services.sync_reconciler import SyncReconciler
from copytrade.services.wallet_ledger import WalletLedger

logger = logging.getLogger(__name__)

STATUS_ALIASES = {
    "pending": TransactionStatus.PENDING.value,
    "in-process": TransactionStatus.IN_PROCESS.value,
    "in_process": TransactionStatus.IN_PROCESS.value,
    "processing": TransactionStatus.IN_PROCESS.value,
    "completed": TransactionStatus.COMPLETED.value,
    "approved": TransactionStatus.COMPLETED.value,
    "success": TransactionStatus.COMPLETED.value,
    "failed": TransactionStatus.FAILED.value,
    "rejected": TransactionStatus.FAILED.value,
}

VALID_TRANSITIONS = {
    TransactionStatus.PENDING.value: {
        TransactionStatus.IN_PROCESS.value,
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
    },
    # Re-submitting proof while under review is allowed
    TransactionStatus.IN_PROCESS.value: {
        TransactionStatus.IN_PROCESS.value,
        TransactionStatus.COMPLETED.value,
        TransactionStatus.FAILED.value,
    },
    TransactionStatus.COMPLETED.value: set(),
    TransactionStatus.FAILED.value: set(),
}

NOT_TERMINAL = Guard.is_in("status", *OPEN_STATUSES)


def check_transition(current: str, target: str) -> None:
    if target not in VALID_TRANSITIONS.get(current, set()):
        raise InvalidTransition(f"{current} -> {target} is not allowed")


def normalize_status(value: str) -> str:
    """Map the legacy spellings clients still send onto the canonical status set."""
    status = STATUS_ALIASES.get(str(enum_value(value)).strip().lower())
    if status is None:
        raise ValidationError(f"Unknown transaction status: {value}")
    return status


@dataclass
class TransitionResult:
    transaction: WalletTransaction
    applied: bool
    user: Optional[User] = None

    @property
    def credit_pending(self) -> bool:
        return self.transaction.credit_pending


class TransactionLifecycle:

    def __init__(
        self,
        store: RecordStore,
        ledger: WalletLedger,
        registry: RunningStrategyRegistry,
        reconciler: SyncReconciler,
        notifier: Notifier,
    ):
        self.store = store
        self.ledger = ledger
        self.registry = registry
        self.reconciler = reconciler
        self.notifier = notifier

    # ============================================================================
    # USER OPERATIONS
    # ============================================================================

    async def create(self, user_id: str, data: TransactionCreate, **extra) -> WalletTransaction:
        """Record a new pending transaction for `user_id`."""
        if data.amount is None or Decimal(data.amount) <= 0:
            raise ValidationError("Amount must be greater than zero")

        await self.reconciler.ensure_user(user_id)
        await self.store.get(User, user_id)

        fields = {k: enum_value(v) for k, v in data.model_dump().items()}
        fields.update(extra)
        transaction = WalletTransaction(
            user_id=user_id,
            status=TransactionStatus.PENDING.value,
            **fields,
        )
        transaction = await self.store.insert(transaction)
        logger.info(f"Transaction {transaction.id} created for {user_id}: {transaction.amount}")
        await self._publish("transaction.created", transaction)
        return transaction

    async def checkout(self, user_id: str, data: CheckoutCreate) -> WalletTransaction:
        """Strategy purchase: a charge with informational INR / crypto details."""
        strategy = await self.store.find(Strategy, data.strategy_id)
        if strategy is None or not strategy.enabled:
            raise NotFound(f"Strategy {data.strategy_id} not found")

        rate = Decimal(settings.USD_TO_INR_RATE)
        extra = {
            "inr_to_usd_rate": rate,
            "inr_amount": (data.payable_amount * rate).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP),
        }
        method = enum_value(data.payment_method)
        if method == PaymentMethod.USDT_ERC20.value:
            extra["crypto_network"] = CryptoNetwork.ERC20.value
            extra["crypto_wallet_address"] = settings.USDT_ERC20_ADDRESS
            extra["wallet_app_deeplink"] = settings.USDT_WALLET_APP_LINK
        elif method == PaymentMethod.USDT_TRC20.value:
            extra["crypto_network"] = CryptoNetwork.TRC20.value
            extra["crypto_wallet_address"] = settings.USDT_TRC20_ADDRESS
            extra["wallet_app_deeplink"] = settings.USDT_WALLET_APP_LINK

        request = TransactionCreate(
            amount=data.payable_amount,
            transaction_type=TransactionType.CHARGE,
            strategy_id=data.strategy_id,
            plan_level=data.plan_level,
            capital=data.capital,
            payment_method=method,
            terms_accepted=data.terms_accepted,
            platform=data.platform,
            mt_account_id=data.mt_account_id,
            mt_account_password=data.mt_account_password,
            mt_account_server=data.mt_account_server,
        )
        return await self.create(user_id, request, **extra)

    async def attach_proof(self, transaction_id: str, user_id: str, proof: ProofSubmission) -> TransitionResult:
        """Proof of payment moves the transaction to in-process and deploys the strategy."""
        transaction = await self._load(transaction_id)
        if transaction.user_id != user_id:
            raise NotFound(f"WalletTransaction {transaction_id} not found")
        try:
            check_transition(transaction.status, TransactionStatus.IN_PROCESS.value)
        except InvalidTransition as e:
            logger.info(f"Proof for {transaction_id} ignored: {e}")
            return TransitionResult(transaction, applied=False)

        values = {k: enum_value(v) for k, v in proof.model_dump(exclude_none=True).items()}
        values["status"] = TransactionStatus.IN_PROCESS.value

        applied = await self.store.compare_and_set(WalletTransaction, transaction_id, values, NOT_TERMINAL)
        transaction = await self.store.get(WalletTransaction, transaction_id)
        if not applied:
            return TransitionResult(transaction, applied=False)

        if transaction.strategy_id:
            await self.registry.ensure(
                transaction.user_id,
                transaction.strategy_id,
                plan=transaction.plan_level,
                capital=transaction.capital,
            )
        await self._publish("transaction.in_process", transaction)
        return TransitionResult(transaction, applied=True)

    async def list_for_user(self, user_id: str) -> list[WalletTransaction]:
        return await self.store.list(WalletTransaction, {"user_id": user_id})

    # ============================================================================
    # ADMIN OPERATIONS
    # ============================================================================

    async def approve(self, transaction_id: str, admin_id: str, amount: Optional[Decimal] = None) -> TransitionResult:
        """
        Complete the transaction and credit the wallet exactly once.

        `amount` overrides the stored amount for the credit. A crediting
        failure leaves the transaction completed with credit_pending set.
        """
        transaction = await self._load(transaction_id)
        try:
            check_transition(transaction.status, TransactionStatus.COMPLETED.value)
        except InvalidTransition as e:
            logger.info(f"Approve on {transaction_id} ignored: {e}")
            return TransitionResult(transaction, applied=False)

        credit_amount = Decimal(amount) if amount is not None else transaction.amount
        if credit_amount <= 0:
            raise ValidationError("Credit amount must be greater than zero")

        applied = await self.store.compare_and_set(
            WalletTransaction,
            transaction_id,
            {
                "status": TransactionStatus.COMPLETED.value,
                "admin_id": admin_id,
                "credited_amount": credit_amount,
                "credit_pending": True,
                "rejection_reason": None,
            },
            NOT_TERMINAL,
        )
        if not applied:
            transaction = await self.store.get(WalletTransaction, transaction_id)
            logger.info(f"Approve on {transaction_id} lost the race, already {transaction.status}")
            return TransitionResult(transaction, applied=False)

        transaction, user = await self._settle_credit(transaction_id)
        logger.info(f"Transaction {transaction_id} approved by {admin_id}")

        if user is not None:
            subject, body = templates.payment_completed(user.name, transaction.credited_amount, transaction.id)
            await self._notify(user, subject, body)
        await self._publish("transaction.completed", transaction)
        return TransitionResult(transaction, applied=True, user=user)

    async def reject(self, transaction_id: str, admin_id: str, reason: Optional[str] = None) -> TransitionResult:
        """Fail the transaction and remove the running strategy it created."""
        transaction = await self._load(transaction_id)

        applied = False
        if not transaction.is_terminal:
            applied = await self.store.compare_and_set(
                WalletTransaction,
                transaction_id,
                {
                    "status": TransactionStatus.FAILED.value,
                    "admin_id": admin_id,
                    "rejection_reason": reason,
                },
                NOT_TERMINAL,
            )
            transaction = await self.store.get(WalletTransaction, transaction_id)

        if not applied:
            logger.info(f"Reject on {transaction_id} ignored, already {transaction.status}")
            return TransitionResult(transaction, applied=False)

        # Only the rejecting call removes the instance; a later purchase may own the pair by now
        if transaction.strategy_id:
            await self.registry.remove(transaction.user_id, transaction.strategy_id)

        logger.info(f"Transaction {transaction_id} rejected by {admin_id}")
        user = await self.store.find(User, transaction.user_id)
        if user is not None:
            subject, body = templates.payment_rejected(user.name, transaction.id, reason)
            await self._notify(user, subject, body)
        await self._publish("transaction.failed", transaction)
        return TransitionResult(transaction, applied=True)

    async def send_message(self, transaction_id: str, admin_id: str, text: str) -> TransitionResult:
        """Attach an admin message for the user; status is unchanged."""
        text = (text or "").strip()
        if not text:
            raise ValidationError("Message must not be empty")

        transaction = await self._load(transaction_id)
        if transaction.is_terminal:
            return TransitionResult(transaction, applied=False)

        applied = await self.store.compare_and_set(
            WalletTransaction,
            transaction_id,
            {
                "admin_message": text,
                "admin_message_status": AdminMessageStatus.PENDING.value,
                "admin_id": admin_id,
            },
            NOT_TERMINAL,
        )
        transaction = await self.store.get(WalletTransaction, transaction_id)
        if applied:
            user = await self.store.find(User, transaction.user_id)
            if user is not None:
                subject, body = templates.admin_message(user.name, transaction.id, text)
                await self._notify(user, subject, body)
            await self._publish("transaction.message", transaction)
        return TransitionResult(transaction, applied=applied)

    async def decide(
        self,
        transaction_id: str,
        admin_id: str,
        status: str,
        amount: Optional[Decimal] = None,
        reason: Optional[str] = None,
    ) -> TransitionResult:
        """Dispatch a generic admin decision after normalizing its status."""
        outcome = normalize_status(status)
        if outcome == TransactionStatus.COMPLETED.value:
            return await self.approve(transaction_id, admin_id, amount)
        if outcome == TransactionStatus.FAILED.value:
            return await self.reject(transaction_id, admin_id, reason)
        raise ValidationError(f"Admins can only complete or fail a transaction, not set {outcome}")

    async def retry_pending_credits(self) -> list[TransitionResult]:
        """Re-attempt credits that failed after approval."""
        stuck = await self.store.list(
            WalletTransaction,
            {"status": TransactionStatus.COMPLETED.value, "credit_pending": True},
        )
        results = []
        for transaction in stuck:
            transaction, user = await self._settle_credit(transaction.id)
            results.append(TransitionResult(transaction, applied=user is not None, user=user))
        return results

    async def list_for_review(self, statuses: Iterable[str]) -> list[dict]:
        """Transactions in `statuses`, hydrated with owner and strategy names."""
        wanted = [normalize_status(s) for s in statuses]
        transactions = await self.store.list(WalletTransaction, {"status": wanted})
        if not transactions:
            return []

        users = {u.id: u for u in await self.store.list(User, {"id": sorted({t.user_id for t in transactions})})}
        strategy_ids = sorted({t.strategy_id for t in transactions if t.strategy_id})
        strategies = {s.id: s for s in await self.store.list(Strategy, {"id": strategy_ids})} if strategy_ids else {}

        rows = []
        for t in transactions:
            user = users.get(t.user_id)
            strategy = strategies.get(t.strategy_id) if t.strategy_id else None
            rows.append({
                **t.model_dump(),
                "user": {"id": t.user_id, "name": user.name, "email": user.email} if user else None,
                "strategy": {"id": strategy.id, "name": strategy.name} if strategy else None,
            })
        return rows

    # ============================================================================
    # INTERNALS
    # ============================================================================

    async def _load(self, transaction_id: str) -> WalletTransaction:
        """Fetch a transaction, first syncing a fallback-only owner so writes can reach the database."""
        transaction = await self.store.get(WalletTransaction, transaction_id)
        await self.reconciler.ensure_user(transaction.user_id)
        return transaction

    async def _settle_credit(self, transaction_id: str) -> tuple[WalletTransaction, Optional[User]]:
        """
        Claim the pending credit (credit_pending True -> False) and apply it.

        Only the claimant credits, so a credit is applied at most once. On
        failure the flag is restored so retry_pending_credits can pick it up.
        """
        claimed = await self.store.compare_and_set(
            WalletTransaction,
            transaction_id,
            {"credit_pending": False},
            Guard.is_in("credit_pending", True),
        )
        transaction = await self.store.get(WalletTransaction, transaction_id)
        if not claimed:
            return transaction, None

        amount = transaction.credited_amount or transaction.amount
        try:
            user = await self.ledger.credit(transaction.user_id, amount)
        except Exception as e:
            logger.error(f"Credit of {amount} for transaction {transaction_id} failed: {e}", exc_info=True)
            try:
                await self.store.compare_and_set(WalletTransaction, transaction_id, {"credit_pending": True})
            except StorageUnavailable:
                logger.critical(f"Transaction {transaction_id} completed without credit and could not be flagged")
                raise
            return await self.store.get(WalletTransaction, transaction_id), None

        return transaction, user

    async def _notify(self, user: User, subject: str, body: str) -> None:
        try:
            await self.notifier.notify(user.email, subject, body)
        except NotificationError as e:
            logger.warning(f"Notification to {user.email} failed: {e}")

    async def _publish(self, event: str, transaction: WalletTransaction) -> None:
        await publish_event(settings.WALLET_EVENTS_CHANNEL, {
            "event": event,
            "transaction_id": transaction.id,
            "user_id": transaction.user_id,
            "status": transaction.status,
            "amount": str(transaction.amount),
        })
