"""
Client-side projection of the authority's spin queue.

Entries are appended optimistically when the player spins and then moved along
by SPIN_SUBMITTED, OUTCOME and ERROR messages. Messages may be lost, so the
reconciler also pulls a full SPIN_QUEUE snapshot on a timer and on reconnect,
and the snapshot always wins.
"""
import asyncio
import time
from typing import Callable, Dict, List, Optional

from spin_bridge.config import Settings, SpinMode, settings as default_settings
from spin_bridge.errors import ChainUnavailable, CorrelationMiss, NotInitialized, StaleSnapshotConflict
from spin_bridge.logging_config import get_logger
from spin_bridge.outcomes import verify_outcome
from spin_bridge.schemas.messages import (
    BalancePayload,
    Envelope,
    ErrorPayload,
    MessageType,
    OutcomePayload,
    SpinQueuePayload,
    SpinRequestPayload,
    SpinSubmittedPayload,
)
from spin_bridge.schemas.spin_schemas import SpinRequest, Stake
from spin_bridge.spin_queue import EntryStatus, QueueEntry, SpinQueue, new_client_id
from spin_bridge.transport import ChannelTransport

logger = get_logger(__name__)

# error codes that describe the channel rather than a single spin
SESSION_ERROR_CODES = {ChainUnavailable.code, NotInitialized.code, "MESSAGE_HANDLER_ERROR"}


class QueueReconciler:
    def __init__(self, transport: ChannelTransport, settings: Settings = default_settings):
        self.transport = transport
        self.settings = settings
        self.queue = SpinQueue()
        self.balance: Optional[BalancePayload] = None
        self.pending_count = 0
        self.reserved_balance = 0
        self.session_error: Optional[ErrorPayload] = None
        self.last_conflicts: List[StaleSnapshotConflict] = []
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._fade_handles: Dict[str, asyncio.TimerHandle] = {}
        self._sync_task: Optional[asyncio.Task] = None
        self._handlers: Dict[MessageType, Callable[[Envelope], object]] = {
            MessageType.SPIN_SUBMITTED: lambda env: self.on_submitted(env.parse_payload(), env.requestId),
            MessageType.OUTCOME: lambda env: self.on_outcome(env.parse_payload(), env.requestId),
            MessageType.ERROR: lambda env: self.on_error(env.parse_payload(), env.requestId),
            MessageType.SPIN_QUEUE: lambda env: self.apply_snapshot(env.parse_payload()),
            MessageType.BALANCE_UPDATE: lambda env: self.on_balance(env.parse_payload()),
            MessageType.BALANCE_RESPONSE: lambda env: self.on_balance(env.parse_payload()),
        }

    # user actions

    def enqueue(self, request: SpinRequest) -> QueueEntry:
        entry = QueueEntry.from_request(request)
        self.queue.append(entry)
        self.prune()
        return entry

    async def request_spin(self, stake: Stake, mode: SpinMode, client_id: Optional[str] = None) -> QueueEntry:
        request = SpinRequest(clientId=client_id or new_client_id(), stake=stake, mode=mode)
        entry = self.enqueue(request)
        await self.transport.send(
            MessageType.SPIN_REQUEST,
            SpinRequestPayload(clientId=request.clientId, stake=stake, mode=mode),
            request.clientId,
        )
        return entry

    # inbound

    def handles(self, message_type: MessageType) -> bool:
        return message_type in self._handlers

    def handle_message(self, envelope: Envelope) -> None:
        handler = self._handlers.get(envelope.type)
        if handler is None:
            return
        handler(envelope)

    def on_submitted(self, payload: SpinSubmittedPayload, request_id: Optional[str] = None) -> Optional[QueueEntry]:
        if self.queue.find_by_engine_id(payload.id) is not None:
            logger.debug("Duplicate submission ack: engineId=%s", payload.id)
            return self.queue.find_by_engine_id(payload.id)
        echoed = self.queue.find_by_client_id(payload.clientId or request_id)
        if echoed is not None and echoed.engineId is not None:
            echoed = None
        entry = self.queue.oldest_unassigned_pending()
        if echoed is not None and echoed is not entry:
            if entry is not None:
                logger.warning(
                    "Ack order disagrees with echoed clientId: oldest=%s echoed=%s engineId=%s",
                    entry.clientId,
                    echoed.clientId,
                    payload.id,
                )
            entry = echoed
        if entry is None:
            self._correlation_miss(MessageType.SPIN_SUBMITTED, payload.id)
            return None
        entry.mark_submitted(payload.id, payload.txId)
        logger.debug("Entry submitted: clientId=%s engineId=%s", entry.clientId, payload.id)
        return entry

    def _match(self, spin_id: Optional[str], request_id: Optional[str]) -> Optional[QueueEntry]:
        entry = self.queue.match(spin_id) or self.queue.find_by_client_id(request_id)
        if entry is not None and entry.engineId is None and spin_id and spin_id != entry.clientId:
            # the submission ack for this entry never arrived
            entry.assign_engine_id(spin_id)
        return entry

    def on_outcome(self, payload: OutcomePayload, request_id: Optional[str] = None) -> Optional[QueueEntry]:
        entry = self._match(payload.id, request_id)
        if entry is None:
            self._correlation_miss(MessageType.OUTCOME, payload.id)
            return None
        outcome = verify_outcome(payload.to_outcome(), entry.stake.total, self.settings)
        if not entry.mark_completed(outcome):
            logger.debug("Outcome re-delivered for terminal entry: clientId=%s status=%s", entry.clientId, entry.status.value)
            return entry
        logger.info(
            "Entry completed: clientId=%s engineId=%s winnings=%s winLevel=%s",
            entry.clientId,
            entry.engineId,
            outcome.winnings,
            outcome.winLevel.value,
        )
        self._resolve(entry)
        self.prune()
        return entry

    def on_error(self, payload: ErrorPayload, request_id: Optional[str] = None) -> Optional[QueueEntry]:
        request_id = payload.requestId or request_id
        if payload.code in SESSION_ERROR_CODES or not request_id:
            self.session_error = payload
            logger.warning("Session error: code=%s message=%s", payload.code, payload.message)
        if not request_id:
            return None
        entry = self._match(request_id, request_id)
        if entry is None:
            self._correlation_miss(MessageType.ERROR, request_id)
            return None
        if not entry.mark_failed(payload.message):
            logger.debug("Error re-delivered for terminal entry: clientId=%s status=%s", entry.clientId, entry.status.value)
            return entry
        logger.warning("Entry failed: clientId=%s code=%s message=%s", entry.clientId, payload.code, payload.message)
        self._resolve(entry)
        self.prune()
        return entry

    def on_balance(self, payload: BalancePayload) -> None:
        self.balance = payload

    def _correlation_miss(self, message_type: MessageType, spin_id: Optional[str]) -> None:
        miss = CorrelationMiss(f"{message_type.value} for id={spin_id} matches no local entry", spin_id)
        logger.warning("Correlation miss: %s", miss.message)

    # drift correction

    def apply_snapshot(self, payload: SpinQueuePayload) -> List[StaleSnapshotConflict]:
        """
        Replace the local queue with the authority's entries. Local Pending
        entries the authority has not seen yet are kept. Waiters on any other
        dropped entry receive it as last seen locally.
        """
        conflicts = []
        merged = []
        seen = set()
        for raw in payload.entries:
            remote = QueueEntry.model_validate(raw)
            seen.add(remote.clientId)
            local = self.queue.find_by_client_id(remote.clientId)
            if local is not None:
                if local.status != remote.status:
                    conflict = StaleSnapshotConflict(remote.clientId, local.status.value, remote.status.value)
                    logger.warning("Stale local state: %s", conflict.message)
                    conflicts.append(conflict)
                remote.fading = local.fading
            if remote.outcome is not None:
                remote.outcome = verify_outcome(remote.outcome, remote.stake.total, self.settings)
            merged.append(remote)
        dropped = []
        for local in self.queue:
            if local.clientId in seen:
                continue
            if local.status == EntryStatus.PENDING:
                merged.append(local)
            else:
                dropped.append(local)
        merged.sort(key=lambda e: e.createdAt)
        self.queue.replace(merged)
        self.pending_count = payload.pendingCount
        self.reserved_balance = payload.reservedBalance
        self.last_conflicts = conflicts
        for entry in merged:
            if entry.is_terminal:
                self._resolve(entry)
        for entry in dropped:
            logger.info("Entry unknown to authority dropped: clientId=%s status=%s", entry.clientId, entry.status.value)
            self._resolve(entry)
        self.prune()
        return conflicts

    async def request_snapshot(self) -> None:
        await self.transport.send(MessageType.GET_SPIN_QUEUE)

    def expire_stale(self, now: Optional[float] = None) -> List[QueueEntry]:
        now = now or time.time()
        expired = []
        for entry in self.queue.non_terminal():
            if now - entry.createdAt >= self.settings.entry_expiry_seconds and entry.mark_expired():
                logger.warning("Entry expired locally: clientId=%s engineId=%s", entry.clientId, entry.engineId)
                self._resolve(entry)
                expired.append(entry)
        return expired

    async def on_reconnect(self) -> None:
        self.session_error = None
        await self.request_snapshot()

    def start(self) -> None:
        if self._sync_task is None or self._sync_task.done():
            self._sync_task = asyncio.create_task(self._sync_loop())

    async def stop(self) -> None:
        for handle in self._fade_handles.values():
            handle.cancel()
        self._fade_handles.clear()
        if self._sync_task is not None:
            self._sync_task.cancel()
            try:
                await self._sync_task
            except asyncio.CancelledError:
                pass
            self._sync_task = None

    async def _sync_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.snapshot_interval_seconds)
            self.expire_stale()
            await self.request_snapshot()

    # pruning

    def prune(self) -> List[QueueEntry]:
        live = [e for e in self.queue if not e.fading]
        excess = len(live) - self.settings.queue_prune_threshold + 1
        if excess <= 0:
            return []
        fading = [e for e in live if e.is_final][:excess]
        if not fading:
            return []
        loop = asyncio.get_running_loop()
        for entry in fading:
            entry.fading = True
            self._fade_handles[entry.clientId] = loop.call_later(
                self.settings.queue_fade_seconds, self._remove_faded, entry.clientId
            )
        logger.debug("Fading entries: count=%s queue=%s", len(fading), len(self.queue))
        return fading

    def _remove_faded(self, client_id: str) -> None:
        self._fade_handles.pop(client_id, None)
        entry = self.queue.find_by_client_id(client_id)
        if entry is not None and entry.fading and entry.is_final:
            self.queue.remove(entry)

    # waiting

    def _resolve(self, entry: QueueEntry) -> None:
        for future in self._waiters.pop(entry.clientId, []):
            if not future.done():
                future.set_result(entry)

    async def wait_for(self, client_id: str, timeout: Optional[float] = None) -> QueueEntry:
        entry = self.queue.find_by_client_id(client_id)
        if entry is None:
            raise CorrelationMiss(f"No local entry for clientId={client_id}", client_id)
        if entry.is_terminal:
            return entry
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(client_id, []).append(future)
        return await asyncio.wait_for(future, timeout)
