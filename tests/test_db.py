import asyncio
from decimal import Decimal

import pytest

from crash_round.db import RoundStore
from crash_round.engine import RoundStatus
from crash_round.errors import BetError, RoundMissingError, StateError


def run(db_url, scenario):
    async def main():
        store = RoundStore.from_url(db_url)
        await store.init()
        try:
            return await scenario(store)
        finally:
            await store.dispose()

    return asyncio.run(main())


async def new_round(store, round_id="r1"):
    await store.create_round(
        round_id=round_id,
        status=RoundStatus.WAITING,
        multiplier=Decimal("1.00"),
        next_round_time=1_000,
        seed_hash=None,
    )


def test_read_round_empty(db_url):
    async def scenario(store):
        return await store.read_round(), await store.round_exists()

    assert run(db_url, scenario) == (None, False)


def test_create_round_overwrites_previous(db_url):
    async def scenario(store):
        await new_round(store, "r1")
        await store.update_round(round_id="r1", force_crash=True)
        await new_round(store, "r2")
        return await store.read_round()

    state = run(db_url, scenario)
    assert state["roundId"] == "r2"
    assert state["forceCrash"] is False
    assert state["startTime"] is None
    assert state["crashedAt"] is None


def test_update_round_merges_without_touching_bets(db_url):
    async def scenario(store):
        await new_round(store)
        await store.place_bet("alice", Decimal("12.50"))
        await store.update_round(round_id="r1", status=RoundStatus.RUNNING, start_time=5_000)
        await store.update_round(round_id="r1", multiplier=Decimal("1.37"))
        return await store.read_round()

    state = run(db_url, scenario)
    assert state["status"] == "running"
    assert state["multiplier"] == 1.37
    assert state["startTime"] == 5_000
    assert state["bets"] == {
        "alice": {"amount": 12.5, "cashedOut": False, "cashoutMultiplier": None}
    }


def test_update_round_on_stale_or_missing_round(db_url):
    async def scenario(store):
        with pytest.raises(RoundMissingError):
            await store.update_round(multiplier=Decimal("1.10"))
        await new_round(store, "r2")
        with pytest.raises(RoundMissingError):
            await store.update_round(round_id="r1", multiplier=Decimal("1.10"))

    run(db_url, scenario)


def test_update_round_rejects_unknown_fields(db_url):
    async def scenario(store):
        await new_round(store)
        with pytest.raises(ValueError):
            await store.update_round(round_id="r1", crash_point=Decimal("2.00"))

    run(db_url, scenario)


def test_bets_only_while_waiting(db_url):
    async def scenario(store):
        with pytest.raises(StateError):
            await store.place_bet("alice", Decimal("1"))
        await new_round(store)
        with pytest.raises(BetError):
            await store.place_bet("alice", Decimal("0"))
        assert await store.place_bet("alice", Decimal("1")) == "r1"
        with pytest.raises(BetError):
            await store.place_bet("alice", Decimal("2"))
        await store.update_round(round_id="r1", status=RoundStatus.RUNNING)
        with pytest.raises(StateError):
            await store.place_bet("bob", Decimal("1"))

    run(db_url, scenario)


def test_cashout_rules(db_url):
    async def scenario(store):
        await new_round(store)
        await store.place_bet("alice", Decimal("10"))
        await store.place_bet("bob", Decimal("10"))

        with pytest.raises(StateError):
            await store.cashout("alice")

        await store.update_round(round_id="r1", status=RoundStatus.RUNNING)
        await store.update_round(round_id="r1", multiplier=Decimal("1.80"))

        with pytest.raises(BetError):
            await store.cashout("carol")

        # Client may lag behind the server, never lead it
        assert await store.cashout("alice", Decimal("2.50")) == Decimal("1.80")
        assert await store.cashout("bob", Decimal("1.234")) == Decimal("1.23")
        with pytest.raises(BetError):
            await store.cashout("alice")

        return await store.read_round()

    state = run(db_url, scenario)
    assert state["bets"]["alice"]["cashoutMultiplier"] == 1.8
    assert state["bets"]["bob"]["cashoutMultiplier"] == 1.23


def test_cashout_after_crash_commit_is_rejected(db_url):
    async def scenario(store):
        await new_round(store)
        await store.place_bet("alice", Decimal("10"))
        await store.update_round(round_id="r1", status=RoundStatus.RUNNING)
        await store.update_round(
            round_id="r1",
            status=RoundStatus.CRASHED,
            multiplier=Decimal("1.40"),
            crashed_at=Decimal("1.40"),
        )
        with pytest.raises(StateError):
            await store.cashout("alice")
        return await store.read_round()

    state = run(db_url, scenario)
    assert state["bets"]["alice"]["cashedOut"] is False


def test_force_crash_flag(db_url):
    async def scenario(store):
        with pytest.raises(StateError):
            await store.set_force_crash()
        await new_round(store)
        assert await store.set_force_crash() == "r1"
        flagged = (await store.read_round())["forceCrash"]
        await store.update_round(round_id="r1", status=RoundStatus.CRASHED)
        with pytest.raises(StateError):
            await store.set_force_crash()
        return flagged

    assert run(db_url, scenario) is True


def test_append_history_is_create_if_absent(db_url):
    async def scenario(store):
        first = await store.append_history("r1", {"crashedAt": Decimal("2.00"), "timestamp": 10})
        second = await store.append_history("r1", {"crashedAt": Decimal("9.99"), "timestamp": 20})
        return first, second, await store.list_history(), await store.get_history("r1")

    first, second, history, record = run(db_url, scenario)
    assert first is True
    assert second is False
    assert len(history) == 1
    assert record["crashedAt"] == 2.0
    assert record["timestamp"] == 10


def test_delete_round(db_url):
    async def scenario(store):
        await new_round(store)
        wiped = await store.delete_round()
        return wiped, await store.round_exists(), await store.delete_round()

    assert run(db_url, scenario) == (True, False, False)
