"""
Rollups and financial breakdowns derived from a ledger snapshot.

Pure functions of a list of StatisticsEntry; nothing here is stored.

Sign convention per entry (``entry_profit``):
- discharging: ``+|energy_amount| * price`` (revenue)
- charging:    ``-energy_amount * price``   (cost)

Sums use math.fsum so results do not depend on entry order; reported totals
are rounded half-to-even (energy 3 decimals, currency 2, price 4).

Savings decomposition (detailed_breakdown):
- ``discharge_revenue = sum(|discharge| * price)``
- ``cost = sum(charge * price)``
- ``savings = self_consumption_ratio * discharge_revenue``
- ``export_revenue = discharge_revenue - savings``
- ``net_profit = discharge_revenue - cost``

Daily aggregates and the statistics summary report ``total_savings`` with
the same ratio, so every output agrees on what savings means.

CHANGELOG:
- 2026-10-16: Daily and summary savings use the self-consumption ratio
- 2026-10-14: Group monthly/yearly exports by UTC calendar
- 2026-10-13: Add self-consumption ratio to the detailed breakdown
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations

import math
from collections import defaultdict
from collections.abc import Callable, Iterable
from datetime import UTC, datetime

from settlement.src.financial import (
    CURRENCY_DECIMALS,
    ENERGY_AMOUNT_DECIMALS,
    ENERGY_PRICE_DECIMALS,
    bankers_rounding,
    safe_divide,
)
from settlement.src.models import (
    DailyAggregate,
    DetailedBreakdown,
    PeriodAggregate,
    StatisticsEntry,
    StatisticsSummary,
)

PERIOD_RANGES = ("monthly", "yearly")


def entry_profit(entry: StatisticsEntry) -> float:
    """Signed financial contribution of one entry."""
    if entry.type == "discharging":
        return abs(entry.energy_amount) * entry.price_at_time
    return -entry.energy_amount * entry.price_at_time


def utc_date(timestamp_sec: float) -> str:
    """Return the UTC calendar date (``YYYY-MM-DD``) of an epoch timestamp."""
    return datetime.fromtimestamp(timestamp_sec, tz=UTC).date().isoformat()


def _energy(value: float) -> float:
    return bankers_rounding(value, ENERGY_AMOUNT_DECIMALS)


def _money(value: float) -> float:
    return bankers_rounding(value, CURRENCY_DECIMALS)


def _discharge_revenue(discharging: Iterable[StatisticsEntry]) -> float:
    return math.fsum(abs(e.energy_amount) * e.price_at_time for e in discharging)


def _check_ratio(self_consumption_ratio: float) -> None:
    if not 0.0 <= self_consumption_ratio <= 1.0:
        raise ValueError(f"self_consumption_ratio must be within [0, 1], got {self_consumption_ratio}")


# ---------------------------------------------------------------------------
# Daily
# ---------------------------------------------------------------------------


def aggregate_daily(
    entries: Iterable[StatisticsEntry],
    self_consumption_ratio: float = 1.0,
) -> list[DailyAggregate]:
    """Group entries by UTC date, oldest date first.

    Raises:
        ValueError: If *self_consumption_ratio* is outside ``[0, 1]``.
    """
    _check_ratio(self_consumption_ratio)
    groups: dict[str, list[StatisticsEntry]] = defaultdict(list)
    for entry in entries:
        groups[utc_date(entry.timestamp)].append(entry)

    result: list[DailyAggregate] = []
    for date in sorted(groups):
        day = groups[date]
        charging = [e for e in day if e.type == "charging"]
        discharging = [e for e in day if e.type == "discharging"]
        result.append(
            DailyAggregate(
                date=date,
                total_charge_energy=_energy(math.fsum(abs(e.energy_amount) for e in charging)),
                total_discharge_energy=_energy(
                    math.fsum(abs(e.energy_amount) for e in discharging)
                ),
                total_profit=_money(math.fsum(entry_profit(e) for e in day)),
                total_savings=_money(self_consumption_ratio * _discharge_revenue(discharging)),
                event_count=len(day),
            )
        )
    return result


def daily_aggregate_for(
    entries: Iterable[StatisticsEntry],
    date: str,
    self_consumption_ratio: float = 1.0,
) -> DailyAggregate:
    """Return the aggregate for *date*, zeroed when the ledger has none."""
    for day in aggregate_daily(entries, self_consumption_ratio):
        if day.date == date:
            return day
    return DailyAggregate(
        date=date,
        total_charge_energy=0.0,
        total_discharge_energy=0.0,
        total_profit=0.0,
        total_savings=0.0,
        event_count=0,
    )


def hourly_profit(daily_profit: float, now: float) -> float:
    """Average profit per hour since UTC midnight; 0 at midnight itself."""
    current = datetime.fromtimestamp(now, tz=UTC)
    midnight = current.replace(hour=0, minute=0, second=0, microsecond=0)
    hours_elapsed = (current - midnight).total_seconds() / 3600.0
    if hours_elapsed <= 0:
        return 0.0
    return safe_divide(daily_profit, hours_elapsed)


# ---------------------------------------------------------------------------
# Breakdown / summary
# ---------------------------------------------------------------------------


def detailed_breakdown(
    entries: Iterable[StatisticsEntry],
    self_consumption_ratio: float = 1.0,
) -> DetailedBreakdown:
    """Financial breakdown over every entry passed in (the retained window).

    Raises:
        ValueError: If *self_consumption_ratio* is outside ``[0, 1]``.
    """
    _check_ratio(self_consumption_ratio)

    entries = list(entries)
    charging = [e for e in entries if e.type == "charging"]
    discharging = [e for e in entries if e.type == "discharging"]

    cost = math.fsum(abs(e.energy_amount) * e.price_at_time for e in charging)
    revenue = _discharge_revenue(discharging)
    savings = self_consumption_ratio * revenue

    return DetailedBreakdown(
        charge_energy=_energy(math.fsum(abs(e.energy_amount) for e in charging)),
        discharge_energy=_energy(math.fsum(abs(e.energy_amount) for e in discharging)),
        cost=_money(cost),
        discharge_revenue=_money(revenue),
        savings=_money(savings),
        export_revenue=_money(revenue - savings),
        net_profit=_money(revenue - cost),
    )


def statistics_summary(
    entries: Iterable[StatisticsEntry],
    self_consumption_ratio: float = 1.0,
) -> StatisticsSummary:
    """Totals and the mean tariff over *entries*.

    Raises:
        ValueError: If *self_consumption_ratio* is outside ``[0, 1]``.
    """
    _check_ratio(self_consumption_ratio)
    entries = list(entries)
    if not entries:
        return StatisticsSummary()
    discharging = [e for e in entries if e.type == "discharging"]
    priced = [e.price_at_time for e in entries if e.price_at_time]
    return StatisticsSummary(
        total_events=len(entries),
        total_charge_energy=_energy(
            math.fsum(abs(e.energy_amount) for e in entries if e.type == "charging")
        ),
        total_discharge_energy=_energy(math.fsum(abs(e.energy_amount) for e in discharging)),
        total_profit=_money(math.fsum(entry_profit(e) for e in entries)),
        total_savings=_money(self_consumption_ratio * _discharge_revenue(discharging)),
        average_price=bankers_rounding(
            safe_divide(math.fsum(priced), len(priced)), ENERGY_PRICE_DECIMALS
        ),
    )


# ---------------------------------------------------------------------------
# Monthly / yearly
# ---------------------------------------------------------------------------


def _month_key(timestamp_sec: float) -> str:
    return datetime.fromtimestamp(timestamp_sec, tz=UTC).strftime("%Y-%m")


def _year_key(timestamp_sec: float) -> str:
    return datetime.fromtimestamp(timestamp_sec, tz=UTC).strftime("%Y")


def aggregate_by_period(
    entries: Iterable[StatisticsEntry],
    period: str,
) -> list[PeriodAggregate]:
    """Group entries by UTC month (``monthly``) or year (``yearly``).

    Raises:
        ValueError: If *period* is not one of PERIOD_RANGES.
    """
    key_for: Callable[[float], str]
    if period == "monthly":
        key_for = _month_key
    elif period == "yearly":
        key_for = _year_key
    else:
        raise ValueError(f"Unknown period '{period}', expected one of {PERIOD_RANGES}")

    groups: dict[str, list[StatisticsEntry]] = defaultdict(list)
    for entry in entries:
        groups[key_for(entry.timestamp)].append(entry)

    return [
        PeriodAggregate(
            period=key,
            charge_energy=_energy(
                math.fsum(abs(e.energy_amount) for e in groups[key] if e.type == "charging")
            ),
            discharge_energy=_energy(
                math.fsum(abs(e.energy_amount) for e in groups[key] if e.type == "discharging")
            ),
            total_profit=_money(math.fsum(entry_profit(e) for e in groups[key])),
        )
        for key in sorted(groups)
    ]
