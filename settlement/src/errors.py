"""
Exception hierarchy for the settlement engine.

Only failures that abort a computation are exceptions. Routine outcomes such
as a counter reset or retention pruning are reported through outcome
reasons and recovery actions instead.

CHANGELOG:
- 2026-10-16: Remove InvalidPriceError; invalid tariffs are outcome reasons
- 2026-10-12: Initial creation

TODO:
- None
"""

from __future__ import annotations


class SettlementError(Exception):
    """Base class for settlement engine errors."""


class InvalidTelemetryError(SettlementError):
    """A telemetry sample is missing a required field or holds a non-finite value."""

    def __init__(self, field: str, value: object) -> None:
        super().__init__(f"Invalid telemetry field '{field}': {value!r}")
        self.field = field
        self.value = value
