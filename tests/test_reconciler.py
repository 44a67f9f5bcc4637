import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from spin_bridge.client import GameClient  # noqa: E402
from spin_bridge.config import Settings, SpinMode  # noqa: E402
from spin_bridge.errors import CorrelationMiss  # noqa: E402
from spin_bridge.reconciler import QueueReconciler  # noqa: E402
from spin_bridge.schemas.messages import (  # noqa: E402
    ErrorPayload,
    MessageType,
    OutcomePayload,
    SpinQueuePayload,
    SpinSubmittedPayload,
)
from spin_bridge.schemas.spin_schemas import Stake, WinLevel  # noqa: E402
from spin_bridge.spin_queue import EntryStatus  # noqa: E402
from spin_bridge.transport import ChannelTransport  # noqa: E402

GRID = [["A", "B", "C"], ["D", "D", "D"], ["A", "B", "C"], ["D", "D", "D"], ["A", "B", "C"]]
NEAR_MISS_GRID = [["E", "A", "B"], ["E", "C", "D"], ["A", "A", "B"], ["C", "D", "A"], ["B", "C", "D"]]
STAKE = Stake(betAmount=40)
TEST_SETTINGS = Settings(queue_prune_threshold=3, queue_fade_seconds=0.01, entry_expiry_seconds=10)


class RecordingChannel:
    def __init__(self):
        self.sent = []

    async def send(self, message):
        self.sent.append(message)

    def types(self):
        return [m["type"] for m in self.sent]


def make_reconciler(settings=TEST_SETTINGS):
    channel = RecordingChannel()
    return QueueReconciler(ChannelTransport(channel.send), settings), channel


async def _spin(reconciler, client_id):
    return await reconciler.request_spin(STAKE, SpinMode.NETWORK, client_id)


# Correlation
def test_acks_are_matched_to_oldest_pending_entry():
    async def scenario():
        reconciler, channel = make_reconciler()
        a = await _spin(reconciler, "a")
        b = await _spin(reconciler, "b")
        assert channel.types() == ["SPIN_REQUEST", "SPIN_REQUEST"]
        assert channel.sent[0]["requestId"] == "a"

        assert reconciler.on_submitted(SpinSubmittedPayload(id="e1")) is a
        assert reconciler.on_submitted(SpinSubmittedPayload(id="e2")) is b
        assert reconciler.on_submitted(SpinSubmittedPayload(id="e1")) is a, "A repeated ack is a no-op"
        assert reconciler.on_submitted(SpinSubmittedPayload(id="e3")) is None
        return a, b

    a, b = asyncio.run(scenario())
    assert (a.engineId, a.status) == ("e1", EntryStatus.SUBMITTED)
    assert (b.engineId, b.status) == ("e2", EntryStatus.SUBMITTED)


def test_echoed_client_id_overrides_ack_order():
    async def scenario():
        reconciler, _ = make_reconciler()
        a = await _spin(reconciler, "a")
        b = await _spin(reconciler, "b")
        assert reconciler.on_submitted(SpinSubmittedPayload(id="e2", clientId="b")) is b
        assert reconciler.on_submitted(SpinSubmittedPayload(id="e1")) is a
        return a, b

    a, b = asyncio.run(scenario())
    assert a.engineId == "e1"
    assert b.engineId == "e2"


def test_outcome_after_lost_ack_binds_engine_id():
    async def scenario():
        reconciler, _ = make_reconciler()
        a = await _spin(reconciler, "a")
        matched = reconciler.on_outcome(OutcomePayload(id="e9", grid=GRID), request_id="a")
        return a, matched

    a, matched = asyncio.run(scenario())
    assert matched is a
    assert a.engineId == "e9"
    assert a.status == EntryStatus.COMPLETED


def test_redelivered_outcome_is_ignored():
    async def scenario():
        reconciler, _ = make_reconciler()
        a = await _spin(reconciler, "a")
        reconciler.on_submitted(SpinSubmittedPayload(id="e1", clientId="a"))
        reconciler.on_outcome(OutcomePayload(id="e1", grid=GRID, winnings=20, winLevel=WinLevel.SMALL))
        reconciler.on_outcome(OutcomePayload(id="e1", grid=GRID, winnings=400, winLevel=WinLevel.MEDIUM))
        missing = reconciler.on_outcome(OutcomePayload(id="nobody", grid=GRID))
        return a, missing

    a, missing = asyncio.run(scenario())
    assert a.outcome.winnings == 20
    assert missing is None


def test_client_downgrades_uncorroborated_jackpot():
    async def scenario():
        reconciler, _ = make_reconciler()
        a = await _spin(reconciler, "a")
        reconciler.on_submitted(SpinSubmittedPayload(id="e1"))
        reconciler.on_outcome(
            OutcomePayload(
                id="e1",
                grid=NEAR_MISS_GRID,
                winnings=100_000,
                winLevel=WinLevel.JACKPOT,
                jackpotHit=True,
                jackpotAmount=100_000,
            )
        )
        return a

    a = asyncio.run(scenario())
    assert a.outcome.jackpotHit is False
    assert a.outcome.winnings == 0
    assert a.outcome.winLevel == WinLevel.NONE


def test_spin_error_fails_entry_and_channel_error_sets_session_error():
    async def scenario():
        reconciler, _ = make_reconciler()
        a = await _spin(reconciler, "a")
        b = await _spin(reconciler, "b")
        reconciler.on_error(ErrorPayload(code="INSUFFICIENT_BALANCE", message="Insufficient balance", requestId="a"))
        assert reconciler.session_error is None
        assert reconciler.on_error(ErrorPayload(code="NETWORK_ERROR", message="rpc down")) is None
        return reconciler, a, b

    reconciler, a, b = asyncio.run(scenario())
    assert a.status == EntryStatus.FAILED
    assert a.error == "Insufficient balance"
    assert b.status == EntryStatus.PENDING
    assert reconciler.session_error.code == "NETWORK_ERROR"


def test_wait_for_resolves_on_outcome():
    async def scenario():
        reconciler, _ = make_reconciler()
        a = await _spin(reconciler, "a")
        waiter = asyncio.create_task(reconciler.wait_for("a", timeout=5))
        await asyncio.sleep(0)
        reconciler.on_outcome(OutcomePayload(id="e1", grid=GRID), request_id="a")
        resolved = await waiter
        with pytest.raises(CorrelationMiss):
            await reconciler.wait_for("nobody")
        return a, resolved

    a, resolved = asyncio.run(scenario())
    assert resolved is a


# Drift correction
def test_snapshot_wins_and_keeps_unseen_local_entries():
    async def scenario():
        reconciler, _ = make_reconciler(Settings(queue_prune_threshold=10))
        a = await _spin(reconciler, "a")
        b = await _spin(reconciler, "b")
        c = await _spin(reconciler, "c")

        remote_a = a.model_dump(mode="json")
        remote_a.update(status="completed", engineId="e1", outcome={"grid": GRID, "winnings": 40, "winLevel": "small"})
        remote_b = b.model_dump(mode="json")
        remote_b.update(status="submitted", engineId="e2")
        conflicts = reconciler.apply_snapshot(
            SpinQueuePayload(entries=[remote_a, remote_b], pendingCount=1, reservedBalance=40)
        )
        return reconciler, conflicts, c

    reconciler, conflicts, c = asyncio.run(scenario())
    assert sorted(conflict.client_id for conflict in conflicts) == ["a", "b"]
    assert [e.clientId for e in reconciler.queue] == ["a", "b", "c"]
    assert reconciler.queue.find_by_client_id("a").status == EntryStatus.COMPLETED
    assert reconciler.queue.find_by_client_id("a").outcome.winnings == 40
    assert reconciler.queue.find_by_client_id("b").engineId == "e2"
    assert reconciler.queue.find_by_client_id("c") is c, "A spin the authority has not seen yet stays local"
    assert reconciler.pending_count == 1
    assert reconciler.reserved_balance == 40


def test_snapshot_drops_local_entries_the_authority_has_finished_with():
    async def scenario():
        reconciler, _ = make_reconciler()
        a = await _spin(reconciler, "a")
        reconciler.on_submitted(SpinSubmittedPayload(id="e1"))
        waiter = asyncio.create_task(reconciler.wait_for("a"))
        await asyncio.sleep(0)
        conflicts = reconciler.apply_snapshot(SpinQueuePayload(entries=[]))
        resolved = await asyncio.wait_for(waiter, 1)
        return reconciler, a, conflicts, resolved

    reconciler, a, conflicts, resolved = asyncio.run(scenario())
    assert resolved is a, "Nobody keeps waiting on an entry the authority dropped"
    assert a.status == EntryStatus.SUBMITTED
    assert len(reconciler.queue) == 0
    assert conflicts == []


def test_expired_entry_accepts_late_outcome():
    async def scenario():
        reconciler, _ = make_reconciler()
        a = await _spin(reconciler, "a")
        fresh = await _spin(reconciler, "b")
        fresh.createdAt = a.createdAt + 5
        expired = reconciler.expire_stale(now=a.createdAt + 11)
        assert expired == [a]
        assert a.status == EntryStatus.EXPIRED
        assert await reconciler.wait_for("a") is a
        reconciler.on_outcome(OutcomePayload(id="e1", grid=GRID, winnings=80, winLevel=WinLevel.SMALL), request_id="a")
        return a, fresh

    a, fresh = asyncio.run(scenario())
    assert a.status == EntryStatus.COMPLETED
    assert a.outcome.winnings == 80
    assert fresh.status == EntryStatus.PENDING


def test_reconnect_requests_snapshot_and_clears_session_error():
    async def scenario():
        reconciler, channel = make_reconciler()
        reconciler.on_error(ErrorPayload(code="NETWORK_ERROR", message="rpc down"))
        await reconciler.on_reconnect()
        return reconciler, channel

    reconciler, channel = asyncio.run(scenario())
    assert reconciler.session_error is None
    assert channel.types() == ["GET_SPIN_QUEUE"]


# Pruning
def test_finished_entries_fade_then_disappear():
    async def scenario():
        reconciler, _ = make_reconciler()
        for client_id in ("a", "b", "c"):
            await _spin(reconciler, client_id)
        reconciler.on_outcome(OutcomePayload(id="e1", grid=GRID), request_id="a")
        assert reconciler.queue.find_by_client_id("a").fading
        assert len(reconciler.queue) == 3, "Fading entries stay visible until the fade ends"
        await asyncio.sleep(0.05)
        after_fade = [e.clientId for e in reconciler.queue]

        await _spin(reconciler, "d")
        await _spin(reconciler, "e")
        await asyncio.sleep(0.05)
        return after_fade, [e.clientId for e in reconciler.queue]

    after_fade, final = asyncio.run(scenario())
    assert after_fade == ["b", "c"]
    assert final == ["b", "c", "d", "e"], "In-flight entries are never pruned"


# Game client
def test_client_ignores_foreign_channel_traffic():
    async def scenario():
        channel = RecordingChannel()
        client = GameClient(ChannelTransport(channel.send), STAKE, TEST_SETTINGS)
        result = await client.handle_raw({"namespace": "com.other", "type": "OUTCOME", "payload": {"id": "x", "grid": GRID}})
        return client, result

    client, result = asyncio.run(scenario())
    assert result is None
    assert len(client.queue) == 0


def test_changing_bet_or_mode_stops_auto_continuation():
    client = GameClient(ChannelTransport(RecordingChannel().send), STAKE, TEST_SETTINGS)
    client.scheduler.auto_mode = True
    client.set_stake(Stake(betAmount=60))
    assert not client.scheduler.auto_mode
    assert client.scheduler.stop_reason == "bet changed"
    assert client.stake.total == 60

    client.scheduler.auto_mode = True
    client.set_mode(SpinMode.TOKEN)
    assert client.scheduler.stop_reason == "mode changed"
    assert client.mode == SpinMode.TOKEN


def test_bonus_auto_stops_when_credit_reply_never_arrives():
    async def scenario():
        channel = RecordingChannel()
        transport = ChannelTransport(channel.send)
        settings = Settings(confirmation_timeout_seconds=0.05, auto_spin_interval_seconds=0, entry_expiry_seconds=10)
        client = GameClient(transport, STAKE, settings)
        await client.handle_raw(transport.encode(MessageType.CREDIT_BALANCE, {"credits": 0, "bonusSpins": 2}))
        assert client.start_bonus_auto()
        for _ in range(50):
            if channel.types():
                break
            await asyncio.sleep(0)
        request_id = channel.sent[0]["requestId"]
        await client.handle_raw(transport.encode(MessageType.OUTCOME, OutcomePayload(id="e1", grid=GRID), request_id))
        await asyncio.wait_for(client.scheduler.wait_stopped(), 5)
        return client, channel

    client, channel = asyncio.run(scenario())
    assert channel.types() == ["SPIN_REQUEST", "GET_CREDIT_BALANCE"]
    assert client.queue.find_by_client_id(channel.sent[0]["requestId"]).status == EntryStatus.COMPLETED
    assert not client.scheduler.running
    assert not client.scheduler.auto_mode
    assert client.scheduler.stop_reason == "timed out waiting for the authority"


def test_client_routes_host_messages():
    async def scenario():
        channel = RecordingChannel()
        transport = ChannelTransport(channel.send)
        client = GameClient(transport, STAKE, TEST_SETTINGS)
        entry = await client.spin()
        await client.handle_raw(
            transport.encode(MessageType.SPIN_SUBMITTED, SpinSubmittedPayload(id="e1", clientId=entry.clientId), entry.clientId)
        )
        await client.handle_raw(transport.encode(MessageType.CREDIT_BALANCE, {"credits": 0, "bonusSpins": 4}))
        await client.handle_raw(transport.encode(MessageType.BALANCE_UPDATE, {"confirmed": 960, "available": 920, "reserved": 40}))
        return client, entry

    client, entry = asyncio.run(scenario())
    assert entry.status == EntryStatus.SUBMITTED
    assert client.credit_balance.bonusSpins == 4
    assert client.scheduler.counter == 4
    assert client.reconciler.balance.available == 920
