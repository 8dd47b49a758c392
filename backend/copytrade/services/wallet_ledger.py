"""
Wallet Ledger
The only place that mutates users.wallet_balance.
"""

from decimal import Decimal
import logging

from copytrade.core.exceptions import ValidationError
from copytrade.models.user import User
from copytrade.services.record_store import RecordStore

logger = logging.getLogger(__name__)


class WalletLedger:

    def __init__(self, store: RecordStore):
        self.store = store

    async def credit(self, user_id: str, amount: Decimal) -> User:
        """
        Atomically add `amount` to the user's balance.

        Not aware of transactions: crediting at most once per transaction is
        the lifecycle's job.
        """
        amount = Decimal(amount)
        if amount <= 0:
            raise ValidationError("Credit amount must be greater than zero")

        user = await self.store.increment(User, user_id, "wallet_balance", amount)
        logger.info(f"Credited {amount} to {user_id}, balance now {user.wallet_balance}")
        return user

    async def balance(self, user_id: str) -> Decimal:
        user = await self.store.get(User, user_id)
        return user.wallet_balance
