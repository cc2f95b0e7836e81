"""
Retention-pruned, append-only ledger of settled events for one device.

The ledger lives in the device's key-value store under ``statistics`` as a
list of ``StatisticsEntry.model_dump(mode="json")`` dicts. All mutation goes
through one asyncio.Lock per ledger, so concurrent telemetry handlers queue
up instead of interleaving read-modify-write cycles (no lost updates).

Operations:
- read(): snapshot of the entries; lock-free, never mutates.
- append(entry): append then prune, as one locked mutation.
- prune(retention_days): drop entries at or before ``now - retention``,
  then keep only the newest ``max_entries``.
- transaction(): locked multi-step mutation (e.g. a grid counter flush
  producing two entries plus an accumulator state write) committed with a
  single ``set_many``; an exception inside the block writes nothing.
  Callbacks registered with ``on_commit`` run after the write, still under
  the lock.
- history(n): recent non-zero ``|energy_amount|`` values for outlier checks
  (recent_magnitudes() does the same over an in-transaction entry list).
- clear(): remove every entry.

CHANGELOG:
- 2026-10-16: Add on_commit callbacks and recent_magnitudes()
- 2026-10-14: Add transaction() for atomic multi-key commits
- 2026-10-13: Cap the ledger at max_entries after time-based pruning
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, Callable
from typing import Any

from pydantic import ValidationError

from settlement.src.models import StatisticsEntry
from settlement.src.store import STATISTICS_KEY, DeviceStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30
DEFAULT_MAX_ENTRIES = 10000
_SECONDS_PER_DAY = 24 * 60 * 60


def prune_entries(
    entries: list[StatisticsEntry],
    retention_days: float,
    now: float,
    max_entries: int | None = None,
) -> list[StatisticsEntry]:
    """Return the entries that survive retention and the entry cap.

    An entry survives when ``timestamp > now - retention_days * 86400``.
    The cap then keeps the newest *max_entries* in insertion order.
    """
    cutoff = now - retention_days * _SECONDS_PER_DAY
    kept = [e for e in entries if e.timestamp > cutoff]
    if max_entries is not None and len(kept) > max_entries:
        kept = kept[len(kept) - max_entries :]
    return kept


def recent_magnitudes(entries: list[StatisticsEntry], n: int) -> list[float]:
    """Return up to the last *n* non-zero ``|energy_amount|`` values, oldest first."""
    if n < 1:
        return []
    amounts = [abs(e.energy_amount) for e in entries if e.energy_amount != 0]
    return amounts[-n:]


def _decode(raw: Any) -> list[StatisticsEntry]:
    """Decode the stored blob, skipping entries that fail validation."""
    if not raw:
        return []
    entries: list[StatisticsEntry] = []
    for item in raw:
        try:
            entries.append(StatisticsEntry.model_validate(item))
        except ValidationError as exc:
            logger.warning("Skipping malformed ledger entry: %s", exc.errors()[0]["msg"])
    return entries


def _encode(entries: list[StatisticsEntry]) -> list[dict[str, Any]]:
    return [e.model_dump(mode="json") for e in entries]


class LedgerTransaction:
    """Staged mutation handed out by :meth:`StatisticsLedger.transaction`.

    Entries appended here and values staged with :meth:`stage` are only
    written when the ``async with`` block exits cleanly. Callbacks
    registered with :meth:`on_commit` run only after that write succeeds.
    """

    def __init__(self, store: DeviceStore, entries: list[StatisticsEntry]) -> None:
        self._store = store
        self.entries = entries
        self.appended: list[StatisticsEntry] = []
        self.staged: dict[str, Any] = {}
        self.cleared = False
        self.callbacks: list[Callable[[], None]] = []

    async def get(self, key: str) -> Any | None:
        """Read another key of the device store (staged values win)."""
        if key in self.staged:
            return self.staged[key]
        return await self._store.get(key)

    def append(self, entry: StatisticsEntry) -> None:
        self.entries.append(entry)
        self.appended.append(entry)

    def stage(self, key: str, value: Any) -> None:
        """Write *value* under *key* on commit; ``None`` deletes the key."""
        if key == STATISTICS_KEY:
            raise ValueError("Ledger entries are written through append()")
        self.staged[key] = value

    def clear(self) -> None:
        """Drop every entry on commit."""
        self.entries.clear()
        self.appended.clear()
        self.cleared = True

    def on_commit(self, callback: Callable[[], None]) -> None:
        """Run *callback* once the staged changes are written."""
        self.callbacks.append(callback)


class StatisticsLedger:
    """Serialized access to one device's ledger.

    Args:
        store: Device key-value store.
        retention_days: Retention window applied after every append.
        max_entries: Upper bound on the entry count, newest kept.
        clock: Returns the current time in epoch seconds.
    """

    def __init__(
        self,
        store: DeviceStore,
        retention_days: float = DEFAULT_RETENTION_DAYS,
        max_entries: int = DEFAULT_MAX_ENTRIES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.retention_days = retention_days
        self.max_entries = max_entries
        self._clock = clock
        self._lock = asyncio.Lock()

    @property
    def locked(self) -> bool:
        """Whether a mutation is currently in flight."""
        return self._lock.locked()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def read(self) -> list[StatisticsEntry]:
        """Return a point-in-time snapshot of the ledger (oldest first)."""
        return _decode(await self._store.get(STATISTICS_KEY))

    async def history(self, n: int) -> list[float]:
        """Return up to the last *n* non-zero ``|energy_amount|`` values."""
        return recent_magnitudes(await self.read(), n)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def transaction(self) -> AsyncIterator[LedgerTransaction]:
        """Hold the ledger lock for a multi-step mutation.

        On clean exit the staged entries are pruned and written together
        with every staged key in one ``set_many``, then the ``on_commit``
        callbacks run. On exception nothing is written, no callback runs and
        the exception propagates.
        """
        async with self._lock:
            txn = LedgerTransaction(self._store, await self.read())
            yield txn
            before = len(txn.entries)
            kept = prune_entries(txn.entries, self.retention_days, self._clock(), self.max_entries)
            if len(kept) != before:
                logger.info(
                    "Statistics: cleaned up %d entries, retained %d",
                    before - len(kept),
                    len(kept),
                )
            if txn.appended or txn.cleared or len(kept) != before:
                await self._store.set_many({STATISTICS_KEY: _encode(kept), **txn.staged})
            elif txn.staged:
                await self._store.set_many(dict(txn.staged))
            txn.entries = kept
            for callback in txn.callbacks:
                callback()

    async def append(self, entry: StatisticsEntry) -> None:
        """Append *entry* and prune with the configured retention."""
        async with self.transaction() as txn:
            txn.append(entry)
        logger.debug("Logged statistics entry: %s %.3f kWh", entry.type, entry.energy_amount)

    async def prune(self, retention_days: float | None = None) -> int:
        """Prune with *retention_days* (default: configured) and return the count removed."""
        days = self.retention_days if retention_days is None else retention_days
        async with self._lock:
            entries = await self.read()
            kept = prune_entries(entries, days, self._clock(), self.max_entries)
            removed = len(entries) - len(kept)
            if removed:
                await self._store.set(STATISTICS_KEY, _encode(kept))
                logger.info("Statistics: cleaned up %d entries, retained %d", removed, len(kept))
            return removed

    async def clear(self) -> None:
        """Remove every entry."""
        async with self.transaction() as txn:
            txn.clear()
