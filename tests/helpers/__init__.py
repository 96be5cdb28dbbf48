"""Test helpers for the riskwatch test suite"""

from tests.helpers.exchange_stubs import (
    NOW,
    FakeExchange,
    RecordingSink,
    make_position,
    make_positions_opened_in_order,
    raw_ccxt_position,
)

__all__ = [
    "NOW",
    "FakeExchange",
    "RecordingSink",
    "make_position",
    "make_positions_opened_in_order",
    "raw_ccxt_position",
]
