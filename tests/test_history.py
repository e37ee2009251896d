import asyncio
from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError

from crash_round.errors import HistoryError
from crash_round.history import HistoryRecorder


class FlakyStore:
    def __init__(self, failures):
        self.failures = failures
        self.calls = 0
        self.records = {}

    async def append_history(self, round_id, record):
        self.calls += 1
        if self.calls <= self.failures:
            raise OperationalError("INSERT INTO crash_history", {}, Exception("database is locked"))
        if round_id in self.records:
            return False
        self.records[round_id] = record
        return True


async def no_sleep(_):
    return None


def test_record_writes_once():
    store = FlakyStore(failures=0)
    recorder = HistoryRecorder(store, sleep=no_sleep)

    async def scenario():
        first = await recorder.record("r1", Decimal("2.345"), 1_000, forced=True)
        second = await recorder.record("r1", Decimal("3.00"), 2_000)
        return first, second

    assert asyncio.run(scenario()) == (True, True)
    assert list(store.records) == ["r1"]
    assert store.records["r1"]["crashedAt"] == Decimal("2.34")
    assert store.records["r1"]["forced"] is True


def test_record_retries_transient_errors():
    store = FlakyStore(failures=2)
    recorder = HistoryRecorder(store, attempts=3, sleep=no_sleep)

    assert asyncio.run(recorder.record("r1", Decimal("1.50"), 1_000)) is True
    assert store.calls == 3
    assert "r1" in store.records


def test_record_surfaces_persistent_failure():
    store = FlakyStore(failures=10)
    recorder = HistoryRecorder(store, attempts=3, sleep=no_sleep)

    with pytest.raises(HistoryError):
        asyncio.run(recorder.record("r1", Decimal("1.50"), 1_000))
    assert store.calls == 3
    assert store.records == {}
