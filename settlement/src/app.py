"""
FastAPI surface through which the host integration drives device engines.

Endpoints:
- GET  /health
- POST /v1/devices/{device_id}/grid-counters  (local counter payload)
- POST /v1/devices/{device_id}/power          (cloud power payload)
- GET  /v1/devices/{device_id}/metrics
- GET  /v1/devices/{device_id}/export?format=json|csv&range=daily|monthly|yearly|entries
- GET  /v1/devices/{device_id}/verify?period=last_day&details=false
- POST /v1/devices/{device_id}/reset

Engines are created lazily per device and cached in an EngineRegistry on
``app.state``. Each device gets its own store and engine; the event sink
is shared. Structured JSON logging is configured once in the lifespan.

CHANGELOG:
- 2026-10-15: Add reset endpoint
- 2026-10-14: Initial creation

TODO:
- None
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
import sys
from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from typing import Annotated, Any

from fastapi import APIRouter, Body, FastAPI, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from settlement.src.config import EngineSettings
from settlement.src.engine import SettlementEngine, SettlementOutcome
from settlement.src.events import EventSink, NullEventSink, WebhookEventSink
from settlement.src.models import ProfitMetrics
from settlement.src.store import DeviceStore, SqliteStore

logger = logging.getLogger(__name__)

StoreFactory = Callable[[str], Awaitable[DeviceStore]]


# ---------------------------------------------------------------------------
# Structured JSON logging setup
# ---------------------------------------------------------------------------


class JsonFormatter(logging.Formatter):
    """Minimal JSON log formatter."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry)


def configure_logging(level: str = "INFO") -> None:
    """Install the JSON formatter on the root logger, writing to stderr."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level.upper())


def _masked(value: str | None) -> str:
    """Return a short non-reversible fingerprint for diagnostics."""
    if not value:
        return "empty"
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()[:10]
    return f"len={len(value)} sha256={digest}"


def log_config_summary(settings: EngineSettings) -> None:
    """Log the effective configuration at startup, masking the webhook URL."""
    logger.info(
        "Settlement API starting with config: "
        "price_per_kwh=%s, statistics_retention_days=%s, statistics_max_entries=%s, "
        "flush_interval_minutes=%s, outlier_history_size=%s, outlier_z_threshold=%s, "
        "self_consumption_ratio=%s, statistics_transparency=%s, store_path=%s, "
        "webhook_url_masked=%s",
        settings.price_per_kwh,
        settings.statistics_retention_days,
        settings.statistics_max_entries,
        settings.flush_interval_minutes,
        settings.outlier_history_size,
        settings.outlier_z_threshold,
        settings.self_consumption_ratio,
        settings.statistics_transparency,
        settings.store_path,
        _masked(settings.webhook_url),
    )


# ---------------------------------------------------------------------------
# Engine registry
# ---------------------------------------------------------------------------


class EngineRegistry:
    """Lazily creates and caches one SettlementEngine per device.

    Args:
        settings: Configuration shared by every engine.
        sink: Event sink shared by every engine.
        store_factory: Async callable returning an opened store for a
            device id. Defaults to a SqliteStore at ``settings.store_path``.
    """

    def __init__(
        self,
        settings: EngineSettings,
        sink: EventSink,
        store_factory: StoreFactory | None = None,
    ) -> None:
        self._settings = settings
        self._sink = sink
        self._store_factory = store_factory or self._open_sqlite_store
        self._engines: dict[str, SettlementEngine] = {}
        self._stores: list[DeviceStore] = []
        self._lock = asyncio.Lock()

    async def _open_sqlite_store(self, device_id: str) -> DeviceStore:
        store = SqliteStore(self._settings.store_path, device_id)
        await store.open()
        return store

    async def get(self, device_id: str) -> SettlementEngine:
        """Return the engine for *device_id*, creating it on first use."""
        engine = self._engines.get(device_id)
        if engine is not None:
            return engine
        async with self._lock:
            engine = self._engines.get(device_id)
            if engine is None:
                store = await self._store_factory(device_id)
                self._stores.append(store)
                engine = SettlementEngine(device_id, store, self._settings, self._sink)
                self._engines[device_id] = engine
                logger.info("Created settlement engine for device=%s", device_id)
        return engine

    async def close(self) -> None:
        """Close every store that supports closing."""
        for store in self._stores:
            close = getattr(store, "close", None)
            if close is not None:
                await close()
        self._stores.clear()
        self._engines.clear()


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

health_router = APIRouter(tags=["health"])
router = APIRouter(prefix="/v1/devices", tags=["settlement"])


@health_router.get("/health")
async def health() -> dict[str, str]:
    """Return a simple health status."""
    return {"status": "ok"}


async def _engine(request: Request, device_id: str) -> SettlementEngine:
    return await request.app.state.registry.get(device_id)


@router.post("/{device_id}/grid-counters", response_model=SettlementOutcome)
async def post_grid_counters(
    request: Request,
    device_id: str,
    payload: Annotated[dict[str, Any], Body()],
) -> SettlementOutcome:
    """Process a local device payload with cumulative grid counters.

    ``firmware`` selects the counter divisor; ``timestamp`` (epoch seconds)
    defaults to the time of receipt.
    """
    engine = await _engine(request, device_id)
    firmware = payload.get("firmware")
    ts = payload.get("timestamp")
    if firmware is not None and not isinstance(firmware, (int, float)):
        raise HTTPException(status_code=422, detail="firmware must be a number")
    if ts is not None and not isinstance(ts, (int, float)):
        raise HTTPException(status_code=422, detail="timestamp must be epoch seconds")
    return await engine.process_grid_payload(payload, firmware=firmware, ts=ts)


@router.post("/{device_id}/power", response_model=SettlementOutcome)
async def post_power(
    request: Request,
    device_id: str,
    payload: Annotated[dict[str, Any], Body()],
) -> SettlementOutcome:
    """Process a cloud status payload (``charge``, ``discharge``, ``report_time``)."""
    engine = await _engine(request, device_id)
    return await engine.process_power_payload(payload)


@router.get("/{device_id}/metrics", response_model=ProfitMetrics)
async def get_metrics(request: Request, device_id: str) -> ProfitMetrics:
    engine = await _engine(request, device_id)
    return await engine.metrics()


@router.get("/{device_id}/export", response_class=PlainTextResponse)
async def get_export(
    request: Request,
    device_id: str,
    fmt: Annotated[str, Query(alias="format")] = "json",
    time_range: Annotated[str, Query(alias="range")] = "daily",
) -> PlainTextResponse:
    """Export the ledger rollup as JSON or CSV text."""
    engine = await _engine(request, device_id)
    try:
        text = await engine.export_statistics(fmt, time_range)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    media_type = "application/json" if fmt == "json" else "text/csv"
    return PlainTextResponse(text, media_type=media_type)


@router.get("/{device_id}/verify", response_class=PlainTextResponse)
async def get_verify(
    request: Request,
    device_id: str,
    period: str = "last_day",
    details: bool = False,
) -> PlainTextResponse:
    """Render the verification report for a period."""
    engine = await _engine(request, device_id)
    try:
        text = await engine.verify_calculation(period, details)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from None
    return PlainTextResponse(text)


@router.post("/{device_id}/reset")
async def post_reset(request: Request, device_id: str) -> dict[str, str]:
    """Clear the device's ledger and accumulator state."""
    engine = await _engine(request, device_id)
    await engine.reset_statistics()
    return {"status": "reset", "device_id": device_id}


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def _build_sink(settings: EngineSettings) -> EventSink:
    if settings.webhook_url:
        return WebhookEventSink(settings.webhook_url)
    return NullEventSink()


def create_app(
    settings: EngineSettings | None = None,
    store_factory: StoreFactory | None = None,
    sink: EventSink | None = None,
) -> FastAPI:
    """Build the FastAPI application.

    Args:
        settings: Configuration; loaded from the environment when omitted.
        store_factory: Overrides the per-device SqliteStore.
        sink: Overrides the sink derived from ``WEBHOOK_URL``.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        resolved = settings or EngineSettings()
        configure_logging(resolved.log_level)
        log_config_summary(resolved)
        app.state.settings = resolved
        app.state.registry = EngineRegistry(
            resolved,
            sink or _build_sink(resolved),
            store_factory,
        )
        logger.info("Settlement API ready")
        yield
        await app.state.registry.close()
        logger.info("Settlement API shutting down")

    app = FastAPI(
        title="Battery Settlement API",
        description="Energy accounting and settlement for home battery telemetry.",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(health_router)
    app.include_router(router)
    return app
