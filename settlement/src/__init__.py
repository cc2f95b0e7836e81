"""
Energy accounting and settlement engine for home battery telemetry.

Turns periodic battery telemetry (instantaneous charge/discharge power or
cumulative grid import/export counters) into a retention-bounded ledger of
priced charge and discharge events, rolls the ledger up into daily, monthly
and yearly financial aggregates, and renders verification and export reports.

CHANGELOG:
- 2026-10-12: Initial creation

TODO:
- None
"""
