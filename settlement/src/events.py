"""
Notifications emitted after every committed ledger append.

Each appended entry yields two events:
- StatisticsEntryLogged: entry type, timestamp, |energy|, price, method and
  a JSON string of the calculation details.
- CalculationCompleted: calculation type/result plus a JSON string of the
  inputs (meter readings and duration).

Sinks implement the EventSink protocol (async ``emit``). Emission is a side
channel: the engine emits after the ledger commit and a failing sink never
rolls back an append.

Sinks:
- QueueEventSink: bounded asyncio.Queue for an in-process consumer; drops
  the oldest event when full.
- WebhookEventSink: POSTs buffered events as JSON to an HTTPS endpoint via
  httpx, with exponential backoff (1s -> 2s -> ... -> max_backoff_s).
- NullEventSink: discards everything.

CHANGELOG:
- 2026-10-14: Buffer webhook events while backing off
- 2026-10-13: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
from collections import deque
from collections.abc import Callable
from typing import Literal, Protocol, runtime_checkable

import httpx
from pydantic import BaseModel

from settlement.src.models import StatisticsEntry

logger = logging.getLogger(__name__)

_INITIAL_BACKOFF_S = 1.0
_DEFAULT_MAX_BACKOFF_S = 300.0
_DEFAULT_MAX_PENDING = 1000


class StatisticsEntryLogged(BaseModel):
    """A settled entry was written to the ledger."""

    event: Literal["statistics_entry_logged"] = "statistics_entry_logged"
    device_id: str
    entry_type: Literal["charge", "discharge"]
    timestamp: float
    value: float
    energy_price: float
    calculation_method: str
    calculation_details: str


class CalculationCompleted(BaseModel):
    """The energy calculation behind a ledger entry completed."""

    event: Literal["calculation_completed"] = "calculation_completed"
    device_id: str
    calculation_type: Literal["charge", "discharge"]
    timestamp: float
    result: float
    input_data: str
    energy_price: float
    calculation_method: str


SettlementEvent = StatisticsEntryLogged | CalculationCompleted


def build_events(device_id: str, entry: StatisticsEntry) -> list[SettlementEvent]:
    """Return the two notifications for one appended *entry*."""
    kind: Literal["charge", "discharge"] = "charge" if entry.type == "charging" else "discharge"
    method = entry.calculation_audit.calculation_method
    details = {
        "energyAmount": entry.energy_amount,
        "duration": entry.duration,
        "priceAtTime": entry.price_at_time,
        "startEnergyMeter": entry.start_energy_meter,
        "endEnergyMeter": entry.end_energy_meter,
        "calculationMethod": method,
    }
    inputs = {
        "startEnergyMeter": entry.start_energy_meter,
        "endEnergyMeter": entry.end_energy_meter,
        "duration": entry.duration,
    }
    return [
        StatisticsEntryLogged(
            device_id=device_id,
            entry_type=kind,
            timestamp=entry.timestamp,
            value=abs(entry.energy_amount),
            energy_price=entry.price_at_time,
            calculation_method=method,
            calculation_details=json.dumps(details),
        ),
        CalculationCompleted(
            device_id=device_id,
            calculation_type=kind,
            timestamp=entry.timestamp,
            result=abs(entry.energy_amount),
            input_data=json.dumps(inputs),
            energy_price=entry.price_at_time,
            calculation_method=method,
        ),
    ]


@runtime_checkable
class EventSink(Protocol):
    """Receives settlement notifications."""

    async def emit(self, event: SettlementEvent) -> None: ...


class NullEventSink:
    """Discards every event."""

    async def emit(self, event: SettlementEvent) -> None:
        return None


class QueueEventSink:
    """Bounded in-process queue of events.

    Args:
        maxsize: Queue capacity; the oldest event is dropped when full.
    """

    def __init__(self, maxsize: int = _DEFAULT_MAX_PENDING) -> None:
        if maxsize < 1:
            raise ValueError(f"maxsize must be >= 1, got {maxsize}")
        self.queue: asyncio.Queue[SettlementEvent] = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    async def emit(self, event: SettlementEvent) -> None:
        if self.queue.full():
            self.queue.get_nowait()
            self.dropped += 1
            logger.warning("Event queue full, dropped oldest event (total dropped=%d)", self.dropped)
        self.queue.put_nowait(event)

    def drain(self) -> list[SettlementEvent]:
        """Remove and return every queued event."""
        events: list[SettlementEvent] = []
        while not self.queue.empty():
            events.append(self.queue.get_nowait())
        return events


class WebhookEventSink:
    """Forwards events to an HTTPS webhook.

    Events are buffered (bounded, oldest dropped) and POSTed as
    ``{"events": [...]}``. On a non-2xx response or a network error the
    buffer is kept and the backoff doubles, capped at ``max_backoff_s``;
    no request is attempted until the backoff has elapsed. Success resets
    the backoff to 1 second.

    Args:
        url: Webhook URL. Must start with ``https://``.
        max_backoff_s: Maximum backoff delay in seconds.
        max_pending: Maximum number of buffered events.
        timeout_s: Request timeout in seconds.
        clock: Monotonic clock, injectable for tests.

    Raises:
        ValueError: If *url* does not start with ``https://``.
    """

    def __init__(
        self,
        url: str,
        max_backoff_s: float = _DEFAULT_MAX_BACKOFF_S,
        max_pending: int = _DEFAULT_MAX_PENDING,
        timeout_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if not url.lower().startswith("https://"):
            raise ValueError(f"Webhook URL must use HTTPS (got: '{url}').")
        self._url = url
        self._max_backoff_s = max_backoff_s
        self._timeout_s = timeout_s
        self._clock = clock
        self._pending: deque[dict[str, object]] = deque(maxlen=max_pending)
        self._current_backoff = _INITIAL_BACKOFF_S
        self._next_attempt = 0.0
        self._flush_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def current_backoff(self) -> float:
        """Current backoff delay in seconds."""
        return self._current_backoff

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def emit(self, event: SettlementEvent) -> None:
        self._pending.append(event.model_dump(mode="json"))
        await self.flush()

    async def flush(self) -> bool:
        """POST the buffered events.

        Returns:
            ``True`` if the buffer is empty afterwards, ``False`` if the
            request failed or the sink is still backing off.
        """
        async with self._flush_lock:
            return await self._flush_locked()

    async def _flush_locked(self) -> bool:
        if not self._pending:
            return True
        if self._clock() < self._next_attempt:
            logger.debug("Webhook backing off, %d events pending.", len(self._pending))
            return False

        batch = list(self._pending)
        try:
            async with httpx.AsyncClient(verify=True, timeout=self._timeout_s) as client:
                response = await client.post(self._url, json={"events": batch})
        except (httpx.ConnectError, httpx.TimeoutException) as exc:
            logger.warning("Webhook delivery failed (network error): %s", exc)
            self._increase_backoff()
            return False

        if 200 <= response.status_code < 300:
            for _ in batch:
                self._pending.popleft()
            logger.info("Delivered %d events to webhook.", len(batch))
            self._reset_backoff()
            return not self._pending

        logger.warning(
            "Webhook delivery failed (HTTP %d), will retry after %.1fs backoff.",
            response.status_code,
            self._current_backoff,
        )
        self._increase_backoff()
        return False

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _increase_backoff(self) -> None:
        self._next_attempt = self._clock() + self._current_backoff
        self._current_backoff = min(self._current_backoff * 2, self._max_backoff_s)

    def _reset_backoff(self) -> None:
        self._current_backoff = _INITIAL_BACKOFF_S
        self._next_attempt = 0.0
