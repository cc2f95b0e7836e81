"""
Audit trail, verification report and export rendering.

Read-only over a ledger snapshot:

- audit_trail(entries, start, end, now): per-entry validity flags for
  entries with ``start <= timestamp < end``.
- verify_calculation(entries, period, include_details, now): deterministic
  text report (header, counts, optional detail lines, period summary and a
  closing status line).
- export_statistics(entries, fmt, time_range): JSON or CSV of the daily,
  monthly or yearly rollup, or of the raw entries. CSV columns follow the
  first row's keys.

Unknown periods, formats and ranges raise ValueError. An empty ledger
yields a fixed placeholder instead of a report.

CHANGELOG:
- 2026-10-16: Thread the self-consumption ratio into savings totals
- 2026-10-14: Add ``entries`` export range
- 2026-10-13: Initial creation

TODO:
- None
"""

from __future__ import annotations

import csv
import io
import json
import math
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from settlement.src.aggregation import (
    aggregate_by_period,
    aggregate_daily,
    entry_profit,
    statistics_summary,
)
from settlement.src.financial import (
    PRECISION_THRESHOLD,
    validate_energy_amount,
    validate_timestamp,
)
from settlement.src.models import StatisticsEntry

VERIFY_PERIODS: dict[str, float] = {
    "last_hour": 60 * 60,
    "last_day": 24 * 60 * 60,
    "last_week": 7 * 24 * 60 * 60,
    "last_month": 30 * 24 * 60 * 60,
}

EXPORT_FORMATS = ("json", "csv")
EXPORT_RANGES = ("daily", "monthly", "yearly", "entries")

NO_DATA_VERIFICATION = "No statistics data available for verification"
NO_DATA_JSON = '{"error": "No statistics data available"}'
NO_DATA_CSV = "Error: No statistics data available"


@dataclass(frozen=True)
class EntryVerification:
    """Recomputed validity of one ledger entry."""

    entry: StatisticsEntry
    energy_valid: bool
    profit_valid: bool
    timestamp_valid: bool
    precision_loss: float
    outlier_detected: bool
    recovery_actions: list[str] = field(default_factory=list)
    details: str = ""

    @property
    def is_valid(self) -> bool:
        return self.energy_valid and self.profit_valid and self.timestamp_valid


def _energy_valid(entry: StatisticsEntry) -> bool:
    amount = entry.energy_amount
    if not math.isfinite(amount):
        return False
    if entry.type == "charging" and amount <= 0:
        return False
    if entry.type == "discharging" and amount >= 0:
        return False
    return validate_energy_amount(abs(amount)).is_valid


def _profit_valid(entry: StatisticsEntry, profit: float) -> bool:
    if not math.isfinite(profit) or not math.isfinite(entry.price_at_time):
        return False
    if entry.type == "charging":
        return profit <= 0
    return profit >= 0


def _iso(timestamp_sec: float) -> str:
    try:
        return datetime.fromtimestamp(timestamp_sec, tz=UTC).isoformat()
    except (OverflowError, OSError, ValueError):
        return str(timestamp_sec)


def audit_trail(
    entries: list[StatisticsEntry],
    start: float,
    end: float,
    now: float,
) -> list[EntryVerification]:
    """Verify each entry with ``start <= timestamp < end``, in ledger order."""
    trail: list[EntryVerification] = []
    for entry in entries:
        if not start <= entry.timestamp < end:
            continue
        energy_valid = _energy_valid(entry)
        profit = entry_profit(entry)
        profit_valid = _profit_valid(entry, profit)
        timestamp_valid = entry.timestamp >= 0 and validate_timestamp(entry.timestamp, now=now).is_valid
        audit = entry.calculation_audit

        parts = [
            f"Energy: {abs(entry.energy_amount):.3f} kWh ({'valid' if energy_valid else 'invalid'})",
        ]
        if entry.price_at_time:
            parts.append(f"Profit/Savings: {profit:.2f} ({'valid' if profit_valid else 'invalid'})")
        parts.append(
            f"Timestamp: {_iso(entry.timestamp)} ({'valid' if timestamp_valid else 'invalid'})"
        )
        if audit.precision_loss > PRECISION_THRESHOLD:
            parts.append(f"Precision Loss: {audit.precision_loss * 100:.4f}%")
        if audit.is_outlier:
            parts.append("Outlier Detected")
        if audit.recovery_actions:
            parts.append(f"Recovery Actions: {len(audit.recovery_actions)}")

        trail.append(
            EntryVerification(
                entry=entry,
                energy_valid=energy_valid,
                profit_valid=profit_valid,
                timestamp_valid=timestamp_valid,
                precision_loss=audit.precision_loss,
                outlier_detected=audit.is_outlier,
                recovery_actions=list(audit.recovery_actions),
                details=", ".join(parts),
            )
        )
    return trail


# ---------------------------------------------------------------------------
# Verification report
# ---------------------------------------------------------------------------


def verify_calculation(
    entries: list[StatisticsEntry],
    period: str,
    include_details: bool,
    now: float,
    self_consumption_ratio: float = 1.0,
) -> str:
    """Render the verification report for the window ``[now - period, now)``.

    Raises:
        ValueError: If *period* is not one of VERIFY_PERIODS.
    """
    if period not in VERIFY_PERIODS:
        raise ValueError(f"Unknown period '{period}', expected one of {tuple(VERIFY_PERIODS)}")
    if not entries:
        return NO_DATA_VERIFICATION

    start = now - VERIFY_PERIODS[period]
    trail = audit_trail(entries, start, now, now)

    lines = [
        f"Verification Report for {period.replace('_', ' ', 1).upper()}",
        f"Total entries: {len(trail)}",
        "",
    ]

    valid = invalid = precision_losses = outliers = recovery_actions = 0
    for item in trail:
        if item.is_valid:
            valid += 1
        else:
            invalid += 1
        if item.precision_loss > 0:
            precision_losses += 1
        if item.outlier_detected:
            outliers += 1
        recovery_actions += len(item.recovery_actions)
        if include_details:
            lines.append(f"Entry: {item.details}")
            if item.recovery_actions:
                lines.append(f"  Recovery Actions: {'; '.join(item.recovery_actions)}")

    lines.extend(
        [
            f"Valid entries: {valid}",
            f"Invalid entries: {invalid}",
            f"Precision losses detected: {precision_losses}",
            f"Outliers detected: {outliers}",
            f"Total recovery actions: {recovery_actions}",
        ]
    )

    if trail:
        summary = statistics_summary((item.entry for item in trail), self_consumption_ratio)
        lines.extend(
            [
                "",
                "Period Summary:",
                f"  Total charge energy: {summary.total_charge_energy:.3f} kWh",
                f"  Total discharge energy: {summary.total_discharge_energy:.3f} kWh",
                f"  Total profit: {summary.total_profit:.2f}",
                f"  Total savings: {summary.total_savings:.2f}",
                f"  Average price: {summary.average_price:.4f}/kWh",
            ]
        )

    lines.append("")
    if invalid or precision_losses or outliers:
        lines.append("Issues detected:")
        if invalid:
            lines.append(f"- {invalid} entries have validation failures")
        if precision_losses:
            lines.append(f"- {precision_losses} entries have precision loss issues")
        if outliers:
            lines.append(f"- {outliers} entries are statistical outliers")
        lines.append("Check logs for detailed information.")
    else:
        lines.append("All entries passed validation with no critical issues detected.")

    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Export
# ---------------------------------------------------------------------------


def _entry_row(entry: StatisticsEntry) -> dict[str, Any]:
    return {
        "timestamp": entry.timestamp,
        "type": entry.type,
        "energy_amount": entry.energy_amount,
        "duration": entry.duration,
        "price_at_time": entry.price_at_time,
        "start_energy_meter": entry.start_energy_meter,
        "end_energy_meter": entry.end_energy_meter,
        "calculation_method": entry.calculation_audit.calculation_method,
        "is_outlier": entry.calculation_audit.is_outlier,
    }


def export_rows(
    entries: list[StatisticsEntry],
    time_range: str,
    self_consumption_ratio: float = 1.0,
) -> list[dict[str, Any]]:
    """Return the flat rows exported for *time_range*.

    Raises:
        ValueError: If *time_range* is not one of EXPORT_RANGES.
    """
    if time_range == "daily":
        return [day.model_dump() for day in aggregate_daily(entries, self_consumption_ratio)]
    if time_range in ("monthly", "yearly"):
        key = "month" if time_range == "monthly" else "year"
        return [
            {
                key: agg.period,
                "charge_energy": agg.charge_energy,
                "discharge_energy": agg.discharge_energy,
                "total_profit": agg.total_profit,
            }
            for agg in aggregate_by_period(entries, time_range)
        ]
    if time_range == "entries":
        return [_entry_row(e) for e in entries]
    raise ValueError(f"Unknown range '{time_range}', expected one of {EXPORT_RANGES}")


def export_statistics(
    entries: list[StatisticsEntry],
    fmt: str,
    time_range: str,
    self_consumption_ratio: float = 1.0,
) -> str:
    """Render the ledger rollup as JSON or CSV text.

    Raises:
        ValueError: For an unknown format or range.
    """
    if fmt not in EXPORT_FORMATS:
        raise ValueError(f"Unknown format '{fmt}', expected one of {EXPORT_FORMATS}")
    rows = export_rows(entries, time_range, self_consumption_ratio)
    if not entries:
        return NO_DATA_JSON if fmt == "json" else NO_DATA_CSV

    if fmt == "json":
        return json.dumps(rows, indent=2)

    buffer = io.StringIO()
    writer = csv.DictWriter(buffer, fieldnames=list(rows[0]), lineterminator="\n")
    writer.writeheader()
    writer.writerows(rows)
    return buffer.getvalue().rstrip("\n")
