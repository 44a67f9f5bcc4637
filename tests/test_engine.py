import asyncio
import random
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spin_bridge.clients.memory_chain import LOSING_GRID, InMemoryChainAdapter  # noqa: E402
from spin_bridge.config import Settings, SpinMode  # noqa: E402
from spin_bridge.engine import SpinEngine  # noqa: E402
from spin_bridge.errors import ChainUnavailable, InsufficientFunds, InvalidStake, NotInitialized  # noqa: E402
from spin_bridge.events import EventType  # noqa: E402
from spin_bridge.schemas.spin_schemas import MachineConfig, Outcome, SpinRequest, Stake, WinLevel  # noqa: E402
from spin_bridge.spin_queue import EntryStatus  # noqa: E402

WALLET = "wallet-1"
STAKE = Stake(betAmount=40)
TEST_SETTINGS = Settings(
    balance_poll_seconds=0,
    auto_spin_interval_seconds=0,
    retry_backoff_seconds=0,
    confirmation_poll_seconds=0,
)


def make_engine(balance=1_000, bonus_spins=0, **adapter_kwargs):
    adapter = InMemoryChainAdapter(
        "machine-1",
        balances={WALLET: balance},
        bonus_spins={WALLET: bonus_spins},
        **adapter_kwargs,
    )
    return SpinEngine(adapter, WALLET, TEST_SETTINGS), adapter


async def until(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return
        await asyncio.sleep(0)
    raise AssertionError("condition never became true")


def test_submit_before_initialize_is_refused():
    engine, _ = make_engine()
    with pytest.raises(NotInitialized):
        engine.validate_stake(STAKE, SpinMode.NETWORK)


# Scenario: three queued spins block a fourth until one resolves with enough funds.
def test_fourth_spin_waits_for_queue_to_drain():
    async def scenario():
        engine, adapter = make_engine(balance=150)
        await engine.initialize()
        first = engine.place_bet(STAKE)
        engine.place_bet(STAKE)
        engine.place_bet(STAKE)
        assert engine.ledger.reserved == 120

        with pytest.raises(InsufficientFunds) as exc:
            engine.place_bet(STAKE)
        assert exc.value.queued_count == 3
        assert "3 spins already queued" in exc.value.message
        assert len(engine.queue) == 3, "A refused spin never enters the queue"

        await until(lambda: len(adapter.open_bets) == 3)
        adapter.confirm("bet-1", Outcome(grid=LOSING_GRID, winnings=20, winLevel=WinLevel.SMALL))
        await engine.wait_for(first.clientId)

        assert first.status == EntryStatus.COMPLETED
        assert engine.ledger.reserved == 80
        assert engine.ledger.available == 50
        fourth = engine.place_bet(STAKE)
        assert fourth.status == EntryStatus.PENDING
        await engine.destroy()

    asyncio.run(scenario())


def test_acks_assigned_in_submission_order_and_outcomes_in_any_order():
    async def scenario():
        engine, adapter = make_engine()
        await engine.initialize()
        submissions = []
        engine.on_submission(submissions.append)
        a = engine.place_bet(STAKE)
        b = engine.place_bet(STAKE)
        await until(lambda: b.status == EntryStatus.SUBMITTED)

        assert a.engineId == "bet-1"
        assert b.engineId == "bet-2"
        assert [s.client_id for s in submissions] == [a.clientId, b.clientId]

        adapter.confirm("bet-2")
        await engine.wait_for(b.clientId)
        assert b.status == EntryStatus.COMPLETED
        assert a.status == EntryStatus.SUBMITTED

        adapter.confirm("bet-1")
        await engine.wait_for(a.clientId)
        assert a.status == EntryStatus.COMPLETED
        assert engine.ledger.reserved == 0
        await engine.destroy()

    asyncio.run(scenario())


def test_duplicate_client_id_is_not_resubmitted():
    async def scenario():
        engine, adapter = make_engine()
        await engine.initialize()
        request = SpinRequest(clientId="client-1", stake=STAKE)
        first = engine.submit_spin(request)
        second = engine.submit_spin(request)
        await until(lambda: first.status == EntryStatus.SUBMITTED)
        assert first is second
        assert len(adapter.submissions) == 1
        assert engine.ledger.reserved == 40
        await engine.destroy()

    asyncio.run(scenario())


def test_rejected_transaction_fails_entry_and_releases_funds():
    async def scenario():
        engine, adapter = make_engine(balance=100)
        await engine.initialize()
        errors = []
        engine.on_error(errors.append)
        entry = engine.place_bet(STAKE)
        other = engine.place_bet(STAKE)
        await until(lambda: len(adapter.open_bets) == 2)

        adapter.reject("bet-1", "out of gas")
        await engine.wait_for(entry.clientId)

        assert entry.status == EntryStatus.FAILED
        assert entry.error == "Transaction failed: out of gas"
        assert other.status == EntryStatus.SUBMITTED, "One failed entry never disturbs the others"
        assert len(errors) == 1
        assert errors[0].code == "TRANSACTION_FAILED"
        assert errors[0].request_id == entry.clientId
        assert engine.ledger.reserved == 40
        assert engine.ledger.confirmed == 100
        await engine.destroy()

    asyncio.run(scenario())


def test_listeners_see_settled_ledger_when_outcome_arrives():
    async def scenario():
        engine, adapter = make_engine(balance=80)
        await engine.initialize()
        seen = []

        def place_again(event):
            seen.append(engine.ledger.as_dict())
            try:
                engine.place_bet(STAKE)
            except InsufficientFunds:
                seen.append("refused")

        engine.on_outcome(place_again)
        first = engine.place_bet(STAKE)
        engine.place_bet(STAKE)
        await until(lambda: len(adapter.open_bets) == 2)

        adapter.confirm("bet-1")
        await engine.wait_for(first.clientId)

        assert seen == [{"confirmed": 40, "reserved": 40, "available": 0}, "refused"]
        assert len(engine.queue) == 2
        assert engine.ledger.reserved <= engine.ledger.confirmed
        await engine.destroy()

    asyncio.run(scenario())


def test_stake_stays_reserved_until_balance_refresh_returns():
    async def scenario():
        engine, adapter = make_engine(balance=80)
        await engine.initialize()
        first = engine.place_bet(STAKE)
        engine.place_bet(STAKE)
        await until(lambda: len(adapter.open_bets) == 2)

        gate = asyncio.Event()
        refreshing = []
        chain_balance = adapter.get_balance

        async def slow_balance(address):
            refreshing.append(address)
            await gate.wait()
            return await chain_balance(address)

        adapter.get_balance = slow_balance
        adapter.confirm("bet-1")
        await until(lambda: refreshing)

        assert first.status == EntryStatus.SUBMITTED
        assert engine.ledger.available == 0
        with pytest.raises(InsufficientFunds):
            engine.place_bet(STAKE)

        gate.set()
        await engine.wait_for(first.clientId)
        assert first.status == EntryStatus.COMPLETED
        assert engine.ledger.as_dict() == {"confirmed": 40, "reserved": 40, "available": 0}
        await engine.destroy()

    asyncio.run(scenario())


def test_chain_outage_fails_only_that_entry():
    async def scenario():
        engine, adapter = make_engine()
        await engine.initialize()
        errors = []
        engine.on_error(errors.append)
        adapter.submit_error = ChainUnavailable("rpc down")
        entry = engine.place_bet(STAKE)
        await engine.wait_for(entry.clientId)
        assert entry.status == EntryStatus.FAILED
        assert entry.engineId is None
        assert errors[0].code == "NETWORK_ERROR"
        assert engine.ledger.reserved == 0

        retry = engine.place_bet(STAKE)
        await until(lambda: retry.status == EntryStatus.SUBMITTED)
        assert retry.engineId == "bet-1"
        await engine.destroy()

    asyncio.run(scenario())


def test_engine_downgrades_uncorroborated_jackpot():
    async def scenario():
        engine, adapter = make_engine()
        await engine.initialize()
        outcomes = []
        engine.on_outcome(outcomes.append)
        entry = engine.place_bet(STAKE)
        await until(lambda: entry.status == EntryStatus.SUBMITTED)
        adapter.confirm(
            "bet-1",
            Outcome(grid=LOSING_GRID, winnings=100_040, winLevel=WinLevel.JACKPOT, jackpotHit=True, jackpotAmount=100_000),
        )
        await engine.wait_for(entry.clientId)
        await engine.destroy()
        return entry, outcomes

    entry, outcomes = asyncio.run(scenario())
    assert entry.outcome.jackpotHit is False
    assert entry.outcome.winnings == 40
    assert outcomes[0].outcome.jackpotHit is False


def test_stake_validation():
    async def scenario():
        engine, _ = make_engine(config=MachineConfig(contractId="machine-1", modeEnabled=2))
        await engine.initialize()
        with pytest.raises(InvalidStake):
            engine.place_bet(Stake(betAmount=50))
        with pytest.raises(InvalidStake):
            engine.place_bet(Stake(paylines=20, betPerLine=2))
        with pytest.raises(InvalidStake) as exc:
            engine.spin_variant(STAKE, SpinMode.CREDIT)
        assert exc.value.code == "INVALID_BET"
        with pytest.raises(InvalidStake):
            engine.spin_variant(STAKE, SpinMode.BONUS)
        assert engine.place_bet(Stake(betAmount=60)).stake.total == 60
        await engine.destroy()

    asyncio.run(scenario())


def test_random_spin_sequences_keep_reservations_covered():
    async def scenario():
        rng = random.Random(11)
        engine, adapter = make_engine(balance=300)
        await engine.initialize()
        for _ in range(60):
            roll = rng.random()
            open_bets = adapter.open_bets
            if roll < 0.5:
                try:
                    engine.place_bet(rng.choice([Stake(betAmount=40), Stake(betAmount=60)]))
                except InsufficientFunds:
                    pass
            elif open_bets and roll < 0.8:
                winnings = rng.choice([0, 0, 20, 80])
                adapter.confirm(open_bets[0], Outcome(grid=LOSING_GRID, winnings=winnings))
            elif open_bets:
                adapter.reject(open_bets[-1])
            for _ in range(10):
                await asyncio.sleep(0)
            assert engine.ledger.reserved <= engine.ledger.confirmed
            assert engine.ledger.available >= 0
            assert engine.ledger.reserved == engine.queue.reserved_total()
        await engine.destroy()

    asyncio.run(scenario())


def test_listeners_are_independent():
    async def scenario():
        engine, adapter = make_engine(auto_confirm=True)
        await engine.initialize()
        seen = []

        def broken(_event):
            raise RuntimeError("listener bug")

        engine.on_outcome(broken)
        unsubscribe = engine.on_outcome(lambda event: seen.append(("removed", event)))
        engine.on_outcome(lambda event: seen.append(("kept", event)))
        unsubscribe()

        await engine.spin_and_wait(STAKE)
        await engine.destroy()
        return seen

    seen = asyncio.run(scenario())
    assert [tag for tag, _ in seen] == ["kept"]


def test_auto_spin_by_count():
    async def scenario():
        engine, adapter = make_engine(auto_confirm=True)
        await engine.initialize()
        assert engine.start_auto_spin(3, STAKE)
        assert not engine.start_auto_spin(3, STAKE), "start is a no-op while running"
        await asyncio.wait_for(engine.scheduler.wait_stopped(), 5)
        state = engine.get_state()
        await engine.destroy()
        return adapter, state

    adapter, state = asyncio.run(scenario())
    assert len(adapter.submissions) == 3
    assert state["autoSpin"]["running"] is False
    assert state["pendingCount"] == 0
    assert state["balance"]["confirmed"] == 1_000 - 3 * 40


def test_bonus_spins_follow_authoritative_counter():
    async def scenario():
        engine, adapter = make_engine(bonus_spins=5, auto_confirm=True)
        await engine.initialize()
        reserved_seen = []
        engine.on_balance(lambda event: reserved_seen.append(event.reserved))
        assert engine.start_bonus_spins(STAKE)
        await asyncio.wait_for(engine.scheduler.wait_stopped(), 5)
        await engine.destroy()
        return engine, adapter, reserved_seen

    engine, adapter, reserved_seen = asyncio.run(scenario())
    assert len(adapter.submissions) == 5
    assert all(s.mode == SpinMode.BONUS for s in adapter.submissions)
    assert all(s.betAmount == 0 for s in adapter.submissions)
    assert set(reserved_seen) == {0}
    assert engine.get_credit_balance().bonusSpins == 0
    assert engine.ledger.confirmed == 1_000


def test_destroy_releases_subscriptions_and_closes_adapter():
    async def scenario():
        engine, adapter = make_engine()
        await engine.initialize()
        engine.on_outcome(lambda event: None)
        entry = engine.place_bet(STAKE)
        await until(lambda: entry.status == EntryStatus.SUBMITTED)
        await engine.destroy()
        return engine, adapter

    engine, adapter = asyncio.run(scenario())
    assert adapter.closed
    assert engine.events.listener_count(EventType.OUTCOME) == 0
