"""
Sync Reconciler
One-shot migration of fallback-only rows into the relational store.

Unlike the record store this talks to the relational backend directly and
never falls back: if the database is down the caller gets BackendUnavailable.
"""

from typing import Optional
import logging
import secrets

import pydantic

from copytrade.core.exceptions import BackendUnavailable, RecordConflict
from copytrade.core.security import hash_password
from copytrade.models.strategy import RunningStrategy
from copytrade.models.user import User
from copytrade.models.wallet import WalletTransaction
from copytrade.services.record_store import RecordStore, normalize

logger = logging.getLogger(__name__)

MIN_PASSWORD_HASH_LENGTH = 10

TABLE_MODELS = {
    "users": User,
    "wallet_transactions": WalletTransaction,
    "running_strategies": RunningStrategy,
}


class SyncReconciler:

    def __init__(self, store: RecordStore):
        self.store = store

    @property
    def relational(self):
        if self.store.relational is None:
            raise BackendUnavailable("Relational store not configured")
        return self.store.relational

    def _user_row(self, raw: dict) -> dict:
        row = dict(raw)
        password_hash = row.get("password_hash") or ""
        if len(password_hash) < MIN_PASSWORD_HASH_LENGTH:
            # Unusable random password; the user has to reset it
            row["password_hash"] = hash_password(secrets.token_urlsafe(24))
        row.setdefault("role", "USER")
        return normalize(User, row)

    async def reconcile_users(self) -> dict:
        """
        Copy JSON-only users into the relational store.

        Never overwrites: rows without id or email, or whose id or email is
        already in the relational store, are skipped.
        """
        relational = self.relational
        doc = await self.store.fallback.read()
        candidates = doc.get("users", [])

        existing = await relational.select(User)
        known_ids = {u["id"] for u in existing}
        known_emails = {u["email"].lower() for u in existing}

        inserted = skipped = 0
        for raw in candidates:
            user_id, email = raw.get("id"), raw.get("email")
            if not user_id or not email:
                skipped += 1
                continue
            if user_id in known_ids or email.lower() in known_emails:
                skipped += 1
                continue
            try:
                await relational.insert(User, self._user_row(raw))
            except pydantic.ValidationError as e:
                logger.warning(f"User {user_id} not synced, row is malformed: {e.error_count()} invalid field(s)")
                skipped += 1
                continue
            except RecordConflict:
                skipped += 1
                continue
            known_ids.add(user_id)
            known_emails.add(email.lower())
            inserted += 1

        logger.info(f"User sync complete: {inserted} inserted, {skipped} skipped")
        return {"inserted": inserted, "skipped": skipped}

    async def ensure_user(self, user_id: str) -> Optional[User]:
        """
        Make sure a fallback-only user exists relationally before rows that
        reference it are written there. Silently does nothing while the
        relational store is down.
        """
        if self.store.relational is None:
            return None
        try:
            if await self.store.relational.get(User, user_id) is not None:
                return None
        except BackendUnavailable:
            return None

        doc = await self.store.fallback.read()
        raw = next((u for u in doc.get("users", []) if u.get("id") == user_id), None)
        if raw is None or not raw.get("email"):
            return None

        try:
            row = self._user_row(raw)
            await self.store.relational.insert(User, row)
        except pydantic.ValidationError as e:
            logger.warning(f"User {user_id} not synced, row is malformed: {e.error_count()} invalid field(s)")
            return None
        except RecordConflict:
            logger.warning(f"User {user_id} not synced: email {raw['email']} belongs to another account")
            return None
        except BackendUnavailable as e:
            logger.warning(f"User {user_id} not synced: {e}")
            return None
        logger.info(f"Synced fallback user {user_id} into relational store")
        return User.model_validate(row)

    async def reconcile_deletions(self) -> int:
        """Apply tombstones recorded while the relational store was down."""
        applied = await self.store.apply_tombstones(TABLE_MODELS.values())
        for stone in await self.store.tombstones():
            if stone["table"] not in TABLE_MODELS:
                logger.warning(f"Dropping tombstone for unknown table {stone['table']}")
                await self.store.clear_tombstone(stone)
        if applied:
            logger.info(f"Applied {applied} pending deletions to relational store")
        return applied
