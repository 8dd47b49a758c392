"""
Running Strategy Registry
Tracks strategies deployed for a user and the admin's verification status.

Instances are derived state: the transaction lifecycle creates them when proof
is attached and removes them when the payment is rejected. Account credentials
are not stored on the instance; they come from the most recent transaction
for the same (user, strategy) pair.
"""

from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Optional
import asyncio
import logging

from copytrade.core.exceptions import BackendUnavailable, NotFound, RecordConflict, ValidationError
from copytrade.models.common import enum_value
from copytrade.models.strategy import (
    ADMIN_STATUS_VALUES,
    VISIBLE_RUNNING_STATUSES,
    AdminStatus,
    RunningStrategy,
    RunningStrategyModification,
    RunningStrategyView,
    Strategy,
)
from copytrade.models.user import User
from copytrade.models.wallet import WalletTransaction
from copytrade.services.record_store import RecordStore

logger = logging.getLogger(__name__)

CREDENTIAL_FIELDS = ("platform", "mt_account_id", "mt_account_password", "mt_account_server")
# Editable while the account is live; anything else needs the strategy stopped
RUNNING_EDITABLE_FIELDS = frozenset({"mt_account_password"})


class RunningStrategyRegistry:

    def __init__(self, store: RecordStore):
        self.store = store
        # pair -> (lock, number of tasks holding or waiting on it)
        self._pair_locks: dict[tuple[str, str], tuple[asyncio.Lock, int]] = {}

    @asynccontextmanager
    async def _pair_lock(self, pair: tuple[str, str]):
        lock, users = self._pair_locks.get(pair, (None, 0))
        if lock is None:
            lock = asyncio.Lock()
        self._pair_locks[pair] = (lock, users + 1)
        try:
            async with lock:
                yield
        finally:
            lock, users = self._pair_locks[pair]
            if users == 1:
                del self._pair_locks[pair]
            else:
                self._pair_locks[pair] = (lock, users - 1)

    async def find(self, user_id: str, strategy_id: str) -> Optional[RunningStrategy]:
        rows = await self.store.list(RunningStrategy, {"user_id": user_id, "strategy_id": strategy_id})
        return rows[0] if rows else None

    async def ensure(
        self,
        user_id: str,
        strategy_id: str,
        plan: Optional[str] = None,
        capital: Optional[Decimal] = None,
    ) -> RunningStrategy:
        """Create the in-process instance for this pair unless one already exists."""
        async with self._pair_lock((user_id, strategy_id)):
            existing = await self.find(user_id, strategy_id)
            if existing is not None:
                return existing

            instance = RunningStrategy(
                user_id=user_id,
                strategy_id=strategy_id,
                plan=enum_value(plan),
                capital=capital,
            )
            try:
                instance = await self.store.insert(instance)
            except RecordConflict as conflict:
                existing = await self.find(user_id, strategy_id)
                if existing is not None:
                    # Another process inserted the pair first
                    return existing
                # The clashing row was removed during an outage and is only
                # hidden by a tombstone; apply it and try once more
                try:
                    cleared = await self.store.apply_tombstones([RunningStrategy])
                except BackendUnavailable:
                    raise conflict
                if not cleared:
                    raise conflict
                instance = await self.store.insert(instance)

        logger.info(f"Running strategy {instance.id} created for {user_id}/{strategy_id}")
        return instance

    async def remove(self, user_id: str, strategy_id: str) -> int:
        removed = await self.store.delete(RunningStrategy, {"user_id": user_id, "strategy_id": strategy_id})
        if removed:
            logger.info(f"Removed running strategy for {user_id}/{strategy_id}")
        return removed

    async def set_admin_status(self, instance_id: str, status: str) -> RunningStrategy:
        """Change the verification sub-state only; lifecycle status is untouched."""
        status = enum_value(status)
        if status not in ADMIN_STATUS_VALUES:
            raise ValidationError(f"Unknown admin status: {status}")
        await self.store.compare_and_set(RunningStrategy, instance_id, {"admin_status": status})
        return await self.store.get(RunningStrategy, instance_id)

    async def latest_transaction(self, user_id: str, strategy_id: str) -> Optional[WalletTransaction]:
        rows = await self.store.list(WalletTransaction, {"user_id": user_id, "strategy_id": strategy_id})
        return rows[0] if rows else None

    async def apply_modification(
        self,
        instance_id: str,
        changes: dict,
        requested_by: Optional[str] = None,
    ) -> RunningStrategyView:
        """
        Change the account credentials behind a running strategy.

        `requested_by` is the owning user for self-service requests (None for
        admins). A user request on a live account may only change the password,
        and sends the instance back to in-process for re-verification.
        """
        instance = await self.store.get(RunningStrategy, instance_id)
        if requested_by is not None and instance.user_id != requested_by:
            raise NotFound(f"RunningStrategy {instance_id} not found")

        changes = {k: enum_value(v) for k, v in changes.items() if k in CREDENTIAL_FIELDS and v is not None}
        if not changes:
            raise ValidationError("No credential changes supplied")

        transaction = await self.latest_transaction(instance.user_id, instance.strategy_id)
        if transaction is None:
            raise ValidationError("No account credentials on file for this strategy")

        if requested_by is not None and instance.admin_status == AdminStatus.RUNNING.value:
            locked = [
                field for field, value in changes.items()
                if field not in RUNNING_EDITABLE_FIELDS and value != getattr(transaction, field)
            ]
            if locked:
                raise ValidationError(
                    f"Only the account password can be changed while the strategy is running "
                    f"(rejected: {', '.join(sorted(locked))})"
                )

        reset = requested_by is not None
        next_status = AdminStatus.IN_PROCESS.value if reset else instance.admin_status

        await self.store.insert(RunningStrategyModification(
            running_strategy_id=instance.id,
            user_id=instance.user_id,
            status=next_status,
            new_update_json=changes,
            **changes,
        ))
        await self.store.compare_and_set(WalletTransaction, transaction.id, changes)
        if reset and instance.admin_status != next_status:
            await self.store.compare_and_set(RunningStrategy, instance.id, {"admin_status": next_status})

        logger.info(f"Credentials updated for running strategy {instance.id}: {sorted(changes)}")
        views = await self._hydrate([await self.store.get(RunningStrategy, instance.id)])
        return views[0]

    # ============================================================================
    # VIEWS
    # ============================================================================

    async def _hydrate(self, instances: list[RunningStrategy]) -> list[RunningStrategyView]:
        if not instances:
            return []
        strategy_ids = sorted({i.strategy_id for i in instances})
        user_ids = sorted({i.user_id for i in instances})
        strategies = {s.id: s for s in await self.store.list(Strategy, {"id": strategy_ids})}
        users = {u.id: u for u in await self.store.list(User, {"id": user_ids})}

        # Newest first, so the first hit per pair is the latest transaction
        latest: dict[tuple[str, str], WalletTransaction] = {}
        for tx in await self.store.list(WalletTransaction, {"user_id": user_ids, "strategy_id": strategy_ids}):
            latest.setdefault((tx.user_id, tx.strategy_id), tx)

        views = []
        for instance in instances:
            strategy = strategies.get(instance.strategy_id)
            user = users.get(instance.user_id)
            tx = latest.get((instance.user_id, instance.strategy_id))
            views.append(RunningStrategyView(
                **instance.model_dump(),
                strategy_name=strategy.name if strategy else None,
                user_name=user.name if user else None,
                user_email=user.email if user else None,
                platform=tx.platform if tx else None,
                mt_account_id=tx.mt_account_id if tx else None,
                mt_account_server=tx.mt_account_server if tx else None,
            ))
        return views

    async def list_for_user(self, user_id: str) -> list[RunningStrategyView]:
        instances = await self.store.list(
            RunningStrategy, {"user_id": user_id, "status": list(VISIBLE_RUNNING_STATUSES)}
        )
        return await self._hydrate(instances)

    async def list_admin(self, admin_status: Optional[str] = None) -> list[RunningStrategyView]:
        where = {"status": list(VISIBLE_RUNNING_STATUSES)}
        if admin_status:
            where["admin_status"] = enum_value(admin_status)
        return await self._hydrate(await self.store.list(RunningStrategy, where))

    async def list_modifications(self, running_strategy_id: Optional[str] = None) -> list[RunningStrategyModification]:
        where = {"running_strategy_id": running_strategy_id} if running_strategy_id else None
        return await self.store.list(RunningStrategyModification, where)
