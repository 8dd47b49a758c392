"""
JSON document fallback store.

One file holds an array per table (users, wallet_transactions, ...) plus a
`_tombstones` array. Every access goes through a single asyncio.Lock and the
file is replaced atomically, so readers never observe a half-written document.
The lock is per process: one application process owns the file.
"""

from contextlib import asynccontextmanager
from pathlib import Path
from typing import AsyncIterator
import asyncio
import json
import logging
import os

from copytrade.core.exceptions import StorageUnavailable

logger = logging.getLogger(__name__)

TABLES = (
    "users",
    "wallet_transactions",
    "strategies",
    "running_strategies",
    "running_strategy_modifications",
)
TOMBSTONES = "_tombstones"


def empty_document() -> dict:
    doc = {table: [] for table in TABLES}
    doc[TOMBSTONES] = []
    return doc


class JsonDocumentStore:

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _load(self) -> dict:
        if not self.path.exists():
            return empty_document()
        try:
            with self.path.open("r", encoding="utf-8") as fh:
                doc = json.load(fh)
        except json.JSONDecodeError as e:
            # Never overwrite a document we could not parse
            raise StorageUnavailable(f"Fallback document {self.path} is corrupt: {e}") from e
        if not isinstance(doc, dict):
            raise StorageUnavailable(f"Fallback document {self.path} is not an object")
        for key, value in empty_document().items():
            doc.setdefault(key, value)
        return doc

    def _save(self, doc: dict) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self.path.with_name(f".{self.path.name}.tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(doc, fh, indent=2, default=str)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self.path)

    async def read(self) -> dict:
        """Snapshot of the whole document."""
        async with self._lock:
            try:
                return await asyncio.to_thread(self._load)
            except OSError as e:
                raise StorageUnavailable(f"Fallback document unreadable: {e}") from e

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[dict]:
        """Yield the document for mutation and persist it when the block exits cleanly."""
        async with self._lock:
            try:
                doc = await asyncio.to_thread(self._load)
            except OSError as e:
                raise StorageUnavailable(f"Fallback document unreadable: {e}") from e

            yield doc

            try:
                await asyncio.to_thread(self._save, doc)
            except OSError as e:
                logger.error(f"Fallback document write failed: {e}")
                raise StorageUnavailable(f"Fallback document not writable: {e}") from e
