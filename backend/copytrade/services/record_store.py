"""
Record Store
Dual-backend persistence: relational database first, JSON document fallback.

Every read merges the two backends by id so callers always see one record in
the relational shape. Writes go to the relational store and fall back to the
JSON document when it cannot be reached. A later relational write of the
merged row removes the JSON copy again.
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Iterable, Optional, Type
import asyncio
import logging

from sqlalchemy import delete, select, update
from sqlalchemy.exc import (
    DBAPIError,
    DisconnectionError,
    IntegrityError,
    InterfaceError,
    OperationalError,
    ProgrammingError,
    TimeoutError as PoolTimeout,
)
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlmodel import SQLModel
import pydantic

from copytrade.core.exceptions import (
    BackendUnavailable,
    NotFound,
    RecordConflict,
    StorageUnavailable,
    ValidationError,
)
from copytrade.core.json_store import TOMBSTONES, JsonDocumentStore
from copytrade.models.common import next_timestamp, utcnow
from copytrade.models.wallet import TERMINAL_STATUSES

logger = logging.getLogger(__name__)

# Fields that may have been written to the JSON copy only; a null on the
# merge base is filled from the other copy.
OVERLAY_FIELDS = {
    "wallet_transactions": (
        "admin_message",
        "admin_message_status",
        "rejection_reason",
        "capital",
        "mt_account_server",
        "receipt_reference",
        "credited_amount",
    ),
    "running_strategies": ("capital", "plan"),
    "users": ("name",),
}

# Unique keys other than the primary key, checked before inserts
UNIQUE_KEYS = {
    "users": (("email",),),
    "running_strategies": (("user_id", "strategy_id"),),
}

MAX_WRITE_ATTEMPTS = 5


def table_of(model: Type[SQLModel]) -> str:
    return model.__tablename__


@dataclass(frozen=True)
class Guard:
    """Condition a conditional update must still satisfy: `field IN values` (or NOT IN)."""

    field: str
    values: frozenset
    negate: bool = False

    @classmethod
    def is_in(cls, field: str, *values) -> "Guard":
        return cls(field, frozenset(values))

    @classmethod
    def not_in(cls, field: str, *values) -> "Guard":
        return cls(field, frozenset(values), negate=True)

    def clause(self, model: Type[SQLModel]):
        column = getattr(model, self.field)
        values = list(self.values)
        return column.not_in(values) if self.negate else column.in_(values)

    def matches(self, row: dict) -> bool:
        return (row.get(self.field) in self.values) != self.negate


# ============================================================================
# ROW HELPERS
# ============================================================================

def normalize(model: Type[SQLModel], row: dict) -> dict:
    """Validate a row from either backend into python-typed column values."""
    return model.model_validate(row).model_dump()


def read_row(model: Type[SQLModel], row: dict) -> Optional[dict]:
    """Like normalize, but a JSON row that no longer fits the schema is skipped.

    Legacy fallback documents hold rows written before columns became
    required (users without a password hash). They stay in the document for
    the sync reconciler and are invisible to reads until then.
    """
    try:
        return normalize(model, row)
    except pydantic.ValidationError as e:
        logger.warning(
            f"Skipping malformed fallback row {table_of(model)}/{row.get('id')}: "
            f"{e.error_count()} invalid field(s)"
        )
        return None


def to_json_row(model: Type[SQLModel], row: dict) -> dict:
    return model.model_validate(row).model_dump(mode="json")


def matches_where(row: dict, where: dict) -> bool:
    for field, expected in where.items():
        value = row.get(field)
        if isinstance(expected, (list, tuple, set, frozenset)):
            if value not in expected:
                return False
        elif value != expected:
            return False
    return True


def _is_terminal(table: str, row: dict) -> bool:
    return table == "wallet_transactions" and row.get("status") in TERMINAL_STATUSES


def merge_rows(table: str, relational: Optional[dict], fallback: Optional[dict]) -> Optional[dict]:
    """Merge the relational and JSON copies of one record.

    The newer copy is the base (ties go to the relational copy). A terminal
    transaction copy always wins over a non-terminal one so status never
    regresses. Overlay fields fill nulls on the base from the other copy.
    """
    if relational is None or fallback is None:
        return relational if relational is not None else fallback

    if _is_terminal(table, relational) != _is_terminal(table, fallback):
        if _is_terminal(table, relational):
            base, other = relational, fallback
        else:
            base, other = fallback, relational
    elif fallback["updated_at"] > relational["updated_at"]:
        base, other = fallback, relational
    else:
        base, other = relational, fallback

    merged = dict(base)
    for field in OVERLAY_FIELDS.get(table, ()):
        if merged.get(field) is None and other.get(field) is not None:
            merged[field] = other[field]
    return merged


def is_tombstoned(table: str, row: dict, tombstones: Iterable[dict]) -> bool:
    for stone in tombstones:
        if stone["table"] != table:
            continue
        if not matches_where(row, stone["where"]):
            continue
        if row["created_at"] <= datetime.fromisoformat(stone["deleted_at"]):
            return True
    return False


# ============================================================================
# RELATIONAL BACKEND
# ============================================================================

class SqlBackend:
    """Thin async SQLAlchemy wrapper.

    Only failures that mean the database cannot be used right now become
    BackendUnavailable; anything else (bad values, programming errors)
    propagates.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    @asynccontextmanager
    async def session(self):
        try:
            async with self.session_factory() as session:
                yield session
        except IntegrityError as e:
            raise RecordConflict(f"Unique constraint violated: {e.orig}") from e
        # ProgrammingError covers a schema that lags the models (missing table or column)
        except (
            OperationalError,
            InterfaceError,
            DisconnectionError,
            ProgrammingError,
            PoolTimeout,
            OSError,
            asyncio.TimeoutError,
        ) as e:
            raise BackendUnavailable(f"Relational store unavailable: {e}") from e
        except DBAPIError as e:
            if not e.connection_invalidated:
                raise
            raise BackendUnavailable(f"Relational connection lost: {e}") from e

    async def get(self, model: Type[SQLModel], record_id: str) -> Optional[dict]:
        async with self.session() as session:
            obj = await session.get(model, record_id)
            return obj.model_dump() if obj is not None else None

    async def select(
        self,
        model: Type[SQLModel],
        where: Optional[dict] = None,
        ids: Optional[list[str]] = None,
    ) -> list[dict]:
        stmt = select(model)
        for field, expected in (where or {}).items():
            column = getattr(model, field)
            if isinstance(expected, (list, tuple, set, frozenset)):
                stmt = stmt.where(column.in_(list(expected)))
            else:
                stmt = stmt.where(column == expected)
        if ids is not None:
            stmt = stmt.where(model.id.in_(ids))

        async with self.session() as session:
            result = await session.execute(stmt)
            return [obj.model_dump() for obj in result.scalars().all()]

    async def insert(self, model: Type[SQLModel], row: dict) -> None:
        async with self.session() as session:
            session.add(model.model_validate(row))
            await session.commit()

    async def upsert(self, model: Type[SQLModel], row: dict) -> None:
        async with self.session() as session:
            await session.merge(model.model_validate(row))
            await session.commit()

    async def update_where(
        self,
        model: Type[SQLModel],
        record_id: str,
        values: dict,
        guard: Optional[Guard] = None,
        version: Optional[datetime] = None,
    ) -> int:
        """UPDATE ... WHERE id = ? [AND guard] [AND updated_at = version]; returns affected rows."""
        stmt = update(model).where(model.id == record_id)
        if guard is not None:
            stmt = stmt.where(guard.clause(model))
        if version is not None:
            stmt = stmt.where(model.updated_at == version)
        values = {k: v for k, v in values.items() if k != "id"}
        stmt = stmt.values(**values)

        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount

    async def increment(self, model: Type[SQLModel], record_id: str, field: str, amount: Decimal) -> Optional[dict]:
        column = getattr(model, field)
        stmt = (
            update(model)
            .where(model.id == record_id)
            .values({field: column + amount, "updated_at": utcnow()})
        )
        async with self.session() as session:
            result = await session.execute(stmt)
            await session.commit()
            if result.rowcount == 0:
                return None
            obj = await session.get(model, record_id, populate_existing=True)
            return obj.model_dump() if obj is not None else None

    async def delete_where(
        self,
        model: Type[SQLModel],
        where: dict,
        created_before: Optional[datetime] = None,
    ) -> list[str]:
        conditions = [getattr(model, field) == value for field, value in where.items()]
        if created_before is not None:
            conditions.append(model.created_at <= created_before)

        async with self.session() as session:
            result = await session.execute(select(model.id).where(*conditions))
            ids = list(result.scalars().all())
            if ids:
                await session.execute(delete(model).where(model.id.in_(ids)))
                await session.commit()
            return ids


# ============================================================================
# RECORD STORE
# ============================================================================

class RecordStore:
    """
    Unified read/write access over the relational store and the JSON fallback.

    Records handed out are detached model instances. `degraded` holds
    (table, id) pairs whose latest write reached the JSON document only.
    """

    def __init__(self, relational: Optional[SqlBackend], fallback: JsonDocumentStore):
        self.relational = relational
        self.fallback = fallback
        self.degraded: set[tuple[str, str]] = set()

    # ---------------------------------------------------------------- reads

    async def _sql_get(self, model, record_id) -> tuple[Optional[dict], bool]:
        if self.relational is None:
            return None, False
        try:
            return await self.relational.get(model, record_id), True
        except BackendUnavailable as e:
            logger.warning(f"Relational read of {table_of(model)}/{record_id} failed, using fallback: {e}")
            return None, False

    async def _fallback_snapshot(self, sql_ok: bool) -> dict:
        try:
            return await self.fallback.read()
        except StorageUnavailable:
            if not sql_ok:
                raise
            logger.exception("Fallback document unreadable, serving relational rows only")
            return {}

    def _fallback_row(self, doc: dict, model, record_id: str) -> Optional[dict]:
        for row in doc.get(table_of(model), []):
            if row.get("id") == record_id:
                return read_row(model, row)
        return None

    async def _current(self, model, record_id: str) -> tuple[Optional[dict], Optional[dict], Optional[dict], bool]:
        """(merged, relational copy, fallback copy, relational reachable)"""
        sql_row, sql_ok = await self._sql_get(model, record_id)
        doc = await self._fallback_snapshot(sql_ok)
        json_row = self._fallback_row(doc, model, record_id)
        merged = merge_rows(table_of(model), sql_row, json_row)
        if merged is not None and is_tombstoned(table_of(model), merged, doc.get(TOMBSTONES, [])):
            merged = None
        return merged, sql_row, json_row, sql_ok

    async def get(self, model: Type[SQLModel], record_id: str) -> SQLModel:
        merged, _, _, _ = await self._current(model, record_id)
        if merged is None:
            raise NotFound(f"{model.__name__} {record_id} not found")
        return model.model_validate(merged)

    async def find(self, model: Type[SQLModel], record_id: str) -> Optional[SQLModel]:
        try:
            return await self.get(model, record_id)
        except NotFound:
            return None

    async def list(
        self,
        model: Type[SQLModel],
        where: Optional[dict] = None,
        predicate: Optional[Callable[[Any], bool]] = None,
    ) -> list:
        """Merged rows matching `where` (equality or IN), newest first."""
        table = table_of(model)
        where = where or {}

        sql_rows: dict[str, dict] = {}
        sql_ok = False
        if self.relational is not None:
            try:
                sql_rows = {r["id"]: r for r in await self.relational.select(model, where)}
                sql_ok = True
            except BackendUnavailable as e:
                logger.warning(f"Relational list of {table} failed, using fallback: {e}")

        doc = await self._fallback_snapshot(sql_ok)
        json_rows = {}
        for raw in doc.get(table, []):
            row = read_row(model, raw)
            if row is not None:
                json_rows[row["id"]] = row

        if sql_ok:
            # A JSON copy may no longer match `where` while its relational
            # copy does not either; fetch those relational copies for the merge.
            missing = [rid for rid in json_rows if rid not in sql_rows]
            if missing:
                try:
                    for r in await self.relational.select(model, ids=missing):
                        sql_rows[r["id"]] = r
                except BackendUnavailable as e:
                    logger.warning(f"Relational lookup of fallback rows in {table} failed: {e}")

        tombstones = doc.get(TOMBSTONES, [])
        records = []
        for rid in set(sql_rows) | set(json_rows):
            merged = merge_rows(table, sql_rows.get(rid), json_rows.get(rid))
            if not matches_where(merged, where) or is_tombstoned(table, merged, tombstones):
                continue
            record = model.model_validate(merged)
            if predicate is None or predicate(record):
                records.append(record)

        records.sort(key=lambda r: r.created_at, reverse=True)
        return records

    # --------------------------------------------------------------- writes

    def _mark_degraded(self, table: str, record_id: str, cause: Exception | str) -> None:
        self.degraded.add((table, record_id))
        logger.warning(f"Degraded write: {table}/{record_id} stored in fallback document ({cause})")

    def _heal(self, table: str, record_id: str) -> None:
        self.degraded.discard((table, record_id))

    async def _fallback_upsert(self, model, row: dict) -> None:
        table = table_of(model)
        json_row = to_json_row(model, row)
        async with self.fallback.transaction() as doc:
            rows = doc[table]
            for i, existing in enumerate(rows):
                if existing.get("id") == row["id"]:
                    rows[i] = json_row
                    break
            else:
                rows.append(json_row)

    async def _fallback_discard(self, model, record_id: str, version: Optional[datetime]) -> None:
        """Drop the JSON copy once the relational store holds the merged row.

        A copy that changed since `version` was read is kept.
        """
        table = table_of(model)
        try:
            async with self.fallback.transaction() as doc:
                kept = []
                for row in doc[table]:
                    if row.get("id") == record_id:
                        copy = read_row(model, row)
                        # A malformed copy never took part in the merge
                        if version is None or copy is None or copy["updated_at"] == version:
                            continue
                    kept.append(row)
                doc[table] = kept
        except StorageUnavailable as e:
            # Harmless: the relational copy is newer and wins the merge
            logger.warning(f"Could not drop fallback copy of {table}/{record_id}: {e}")
            return
        self._heal(table, record_id)

    def _check_unique(self, model, row: dict, doc: dict) -> None:
        table = table_of(model)
        candidate = to_json_row(model, row)
        for existing in doc.get(table, []):
            if existing.get("id") == row["id"]:
                raise RecordConflict(f"{model.__name__} {row['id']} already exists")
            for key in UNIQUE_KEYS.get(table, ()):
                if all(existing.get(f) == candidate.get(f) for f in key):
                    raise RecordConflict(f"{model.__name__} with {'/'.join(key)} already exists")

    async def put(self, record: SQLModel) -> SQLModel:
        """Upsert a full record. Raises StorageUnavailable only if both backends fail."""
        model = type(record)
        table = table_of(model)
        row = normalize(model, record.model_dump())
        row["updated_at"] = next_timestamp(row.get("updated_at"))

        cause: Exception | str = "relational store not configured"
        if self.relational is not None:
            try:
                await self.relational.upsert(model, row)
            except BackendUnavailable as e:
                cause = e
            else:
                await self._fallback_discard(model, row["id"], None)
                return model.model_validate(row)

        await self._fallback_upsert(model, row)
        self._mark_degraded(table, row["id"], cause)
        return model.model_validate(row)

    async def insert(self, record: SQLModel) -> SQLModel:
        """Create a record; RecordConflict if its id or a unique key already exists."""
        model = type(record)
        table = table_of(model)
        row = normalize(model, record.model_dump())

        cause: Exception | str = "relational store not configured"
        if self.relational is not None:
            try:
                doc = await self.fallback.read()
            except StorageUnavailable:
                doc = {}
            self._check_unique(model, row, doc)
            try:
                await self.relational.insert(model, row)
            except BackendUnavailable as e:
                cause = e
            else:
                return model.model_validate(row)

        async with self.fallback.transaction() as doc:
            self._check_unique(model, row, doc)
            doc[table].append(to_json_row(model, row))
        self._mark_degraded(table, row["id"], cause)
        return model.model_validate(row)

    async def compare_and_set(
        self,
        model: Type[SQLModel],
        record_id: str,
        values: dict,
        guard: Optional[Guard] = None,
    ) -> bool:
        """
        Conditionally update a record. Returns False when the guard no longer
        holds, i.e. another writer already moved the record on.
        """
        def compute(current: dict) -> Optional[dict]:
            if guard is not None and not guard.matches(current):
                return None
            return dict(values)

        result = await self._write(model, record_id, compute, guard=guard, fast_values=values)
        return result is not None

    async def increment(self, model: Type[SQLModel], record_id: str, field: str, amount: Decimal) -> SQLModel:
        """Atomic `field = field + amount`."""
        def compute(current: dict) -> dict:
            return {field: (current.get(field) or Decimal("0")) + amount}

        result = await self._write(model, record_id, compute, increment=(field, amount))
        return model.model_validate(result)

    async def _write(
        self,
        model: Type[SQLModel],
        record_id: str,
        compute: Callable[[dict], Optional[dict]],
        guard: Optional[Guard] = None,
        fast_values: Optional[dict] = None,
        increment: Optional[tuple[str, Decimal]] = None,
    ) -> Optional[dict]:
        """
        Shared read-modify-write loop.

        Records held only by the relational store are changed with a single
        conditional statement. Records with a JSON copy are merged, written to
        the relational store under an updated_at version check and then
        dropped from the JSON document. Without a relational store the change
        is applied to the JSON document under its lock.
        """
        table = table_of(model)

        for _ in range(MAX_WRITE_ATTEMPTS):
            current, sql_row, json_row, sql_ok = await self._current(model, record_id)
            if current is None:
                raise NotFound(f"{model.__name__} {record_id} not found")
            changes = compute(current)
            if changes is None:
                return None

            if sql_ok:
                try:
                    if json_row is None:
                        if increment is not None:
                            row = await self.relational.increment(model, record_id, *increment)
                            if row is None:
                                raise NotFound(f"{model.__name__} {record_id} not found")
                            return row
                        new_values = {**fast_values, "updated_at": next_timestamp(current["updated_at"])}
                        affected = await self.relational.update_where(model, record_id, new_values, guard=guard)
                        if affected == 0:
                            return None
                        return {**current, **new_values}

                    merged = {**current, **changes, "updated_at": next_timestamp(current["updated_at"])}
                    if sql_row is None:
                        await self.relational.insert(model, merged)
                    else:
                        affected = await self.relational.update_where(
                            model, record_id, merged, version=sql_row["updated_at"]
                        )
                        if affected == 0:
                            continue
                    await self._fallback_discard(model, record_id, json_row["updated_at"])
                    return merged
                except RecordConflict as e:
                    if sql_row is not None:
                        raise
                    promoted, _ = await self._sql_get(model, record_id)
                    if promoted is not None:
                        # Lost the race to promote a fallback-only row
                        continue
                    # The row cannot be promoted yet; keep it in the fallback
                    cause = e
                except BackendUnavailable as e:
                    cause: Exception | str = e
            else:
                cause = "relational store unreachable" if self.relational else "relational store not configured"

            async with self.fallback.transaction() as doc:
                rows = doc[table]
                index = next((i for i, r in enumerate(rows) if r.get("id") == record_id), None)
                latest_json = read_row(model, rows[index]) if index is not None else None
                current = merge_rows(table, sql_row, latest_json)
                if current is None:
                    raise NotFound(f"{model.__name__} {record_id} not found")
                changes = compute(current)
                if changes is None:
                    return None
                merged = {**current, **changes, "updated_at": next_timestamp(current["updated_at"])}
                if index is None:
                    rows.append(to_json_row(model, merged))
                else:
                    rows[index] = to_json_row(model, merged)
            self._mark_degraded(table, record_id, cause)
            return merged

        raise StorageUnavailable(f"Too many concurrent writes to {table}/{record_id}")

    async def delete(self, model: Type[SQLModel], where: dict) -> int:
        """
        Delete matching rows from both backends. While the relational store is
        down a tombstone keeps its rows hidden until reconciled.
        """
        if not where:
            raise ValidationError("Refusing to delete without a filter")
        table = table_of(model)
        removed: set[str] = set()

        sql_ok = False
        if self.relational is not None:
            try:
                removed.update(await self.relational.delete_where(model, where))
                sql_ok = True
            except BackendUnavailable as e:
                logger.warning(f"Relational delete in {table} failed, recording tombstone: {e}")

        async with self.fallback.transaction() as doc:
            kept = []
            for row in doc[table]:
                if matches_where(read_row(model, row) or row, where):
                    removed.add(row["id"])
                else:
                    kept.append(row)
            doc[table] = kept
            if self.relational is not None and not sql_ok:
                doc[TOMBSTONES].append({
                    "table": table,
                    "where": where,
                    "deleted_at": utcnow().isoformat(),
                })

        for rid in removed:
            self._heal(table, rid)
        return len(removed)

    # --------------------------------------------------------- reconciliation

    async def tombstones(self) -> list[dict]:
        doc = await self.fallback.read()
        return list(doc.get(TOMBSTONES, []))

    async def clear_tombstone(self, stone: dict) -> None:
        async with self.fallback.transaction() as doc:
            doc[TOMBSTONES] = [s for s in doc[TOMBSTONES] if s != stone]

    async def apply_tombstones(self, models: Iterable[Type[SQLModel]]) -> int:
        """
        Delete the relational rows hidden by tombstones for `models` and drop
        those tombstones. Returns the number of rows deleted. Raises
        BackendUnavailable if the relational store cannot take the deletes.
        """
        if self.relational is None:
            raise BackendUnavailable("Relational store not configured")
        by_table = {table_of(model): model for model in models}

        applied = 0
        for stone in await self.tombstones():
            model = by_table.get(stone["table"])
            if model is None:
                continue
            deleted = await self.relational.delete_where(
                model, stone["where"], created_before=datetime.fromisoformat(stone["deleted_at"])
            )
            applied += len(deleted)
            await self.clear_tombstone(stone)
        return applied
