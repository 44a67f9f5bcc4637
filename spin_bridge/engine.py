"""
Host authority for one game session.

SpinEngine owns the balance ledger and the authoritative spin queue. Spin
requests are validated and reserved synchronously, then each one is driven
through the chain adapter by its own task. Submissions go to the chain one at
a time in arrival order so that receipts line up with the oldest unassigned
Pending entry; confirmations are awaited concurrently and may finish in any
order.

In embedded mode the game calls the engine directly and subscribes to its
events; in channel mode GameBridge does both on the game's behalf.
"""
import asyncio
from typing import Any, Callable, Dict, List, Optional, Set

from spin_bridge.clients.chain_client import ChainAdapter
from spin_bridge.config import GameVariant, Settings, SpinMode, mode_enabled_bits, settings as default_settings
from spin_bridge.errors import (
    CorrelationMiss,
    InsufficientFunds,
    InvalidStake,
    NotInitialized,
    SpinBridgeError,
    TransactionRejected,
)
from spin_bridge.events import (
    BalanceEvent,
    ErrorEvent,
    EventRegistry,
    EventType,
    OutcomeEvent,
    SubmissionEvent,
    Unsubscribe,
)
from spin_bridge.ledger import BalanceLedger
from spin_bridge.logging_config import get_logger
from spin_bridge.outcomes import verify_outcome
from spin_bridge.scheduler import AutoSpinScheduler
from spin_bridge.schemas.spin_schemas import CreditBalance, MachineConfig, Outcome, SpinRequest, Stake
from spin_bridge.spin_queue import EntryStatus, QueueEntry, SpinQueue, new_client_id

logger = get_logger(__name__)


class SpinEngine:
    def __init__(self, adapter: ChainAdapter, wallet_address: str, settings: Settings = default_settings):
        self.adapter = adapter
        self.wallet_address = wallet_address
        self.settings = settings
        self.ledger = BalanceLedger()
        self.queue = SpinQueue()
        self.events = EventRegistry()
        self.config: Optional[MachineConfig] = None
        self.credit_balance = CreditBalance()
        self.initialized = False
        self.destroyed = False
        self.last_stake: Optional[Stake] = None
        self._submit_lock = asyncio.Lock()
        self._tasks: Set[asyncio.Task] = set()
        self._waiters: Dict[str, List[asyncio.Future]] = {}
        self._in_flight: Set[str] = set()
        self._balance_task: Optional[asyncio.Task] = None
        self._auto_stake: Optional[Stake] = None
        self._auto_mode = SpinMode.NETWORK
        self.scheduler = AutoSpinScheduler(
            self._auto_spin_once,
            settings.auto_spin_interval_seconds,
            name=f"engine:{wallet_address}",
        )

    # lifecycle

    async def initialize(self) -> None:
        if self.initialized:
            return
        await self.adapter.initialize()
        self.config = await self.adapter.get_machine_config()
        self.initialized = True
        await self.refresh_balance()
        await self.refresh_credit_balance()
        if self.settings.balance_poll_seconds > 0:
            self._balance_task = asyncio.create_task(self._poll_balance())
        logger.info(
            "Engine initialized: contract_id=%s wallet=%s confirmed=%s bonusSpins=%s",
            self.config.contractId,
            self.wallet_address,
            self.ledger.confirmed,
            self.credit_balance.bonusSpins,
        )

    async def destroy(self) -> None:
        """Stop timers, in-flight tasks and all subscriptions."""
        if self.destroyed:
            return
        self.destroyed = True
        self.scheduler.stop("engine destroyed")
        tasks = list(self._tasks)
        if self._balance_task is not None:
            tasks.append(self._balance_task)
            self._balance_task = None
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        for futures in self._waiters.values():
            for future in futures:
                if not future.done():
                    future.cancel()
        self._waiters.clear()
        self.events.clear()
        await self.adapter.aclose()
        logger.info("Engine destroyed: wallet=%s in_flight=%s", self.wallet_address, len(tasks))

    def _require_initialized(self) -> MachineConfig:
        if not self.initialized or self.config is None:
            raise NotInitialized("Engine is not initialized")
        return self.config

    # subscriptions

    def on_outcome(self, listener: Callable[[OutcomeEvent], None]) -> Unsubscribe:
        return self.events.subscribe(EventType.OUTCOME, listener)

    def on_submission(self, listener: Callable[[SubmissionEvent], None]) -> Unsubscribe:
        return self.events.subscribe(EventType.SUBMISSION, listener)

    def on_error(self, listener: Callable[[ErrorEvent], None]) -> Unsubscribe:
        return self.events.subscribe(EventType.ERROR, listener)

    def on_balance(self, listener: Callable[[BalanceEvent], None]) -> Unsubscribe:
        return self.events.subscribe(EventType.BALANCE_UPDATE, listener)

    def on_credit_balance(self, listener: Callable[[CreditBalance], None]) -> Unsubscribe:
        return self.events.subscribe(EventType.CREDIT_UPDATE, listener)

    def on_queue_changed(self, listener: Callable[[Any], None]) -> Unsubscribe:
        return self.events.subscribe(EventType.QUEUE_CHANGED, listener)

    def _emit_balance(self) -> None:
        self.events.emit(
            EventType.BALANCE_UPDATE,
            BalanceEvent(
                confirmed=self.ledger.confirmed,
                reserved=self.ledger.reserved,
                available=self.ledger.available,
            ),
        )

    def _emit_error(self, exc: SpinBridgeError, request_id: Optional[str] = None) -> None:
        self.events.emit(
            EventType.ERROR,
            ErrorEvent(
                code=exc.code,
                message=exc.message,
                recoverable=exc.recoverable,
                request_id=request_id or exc.request_id,
            ),
        )

    def _queue_changed(self) -> None:
        self.events.emit(EventType.QUEUE_CHANGED, None)

    # validation

    def validate_stake(self, stake: Stake, mode: SpinMode, request_id: Optional[str] = None) -> None:
        config = self._require_initialized()
        if mode != SpinMode.BONUS and not config.modeEnabled & mode_enabled_bits[mode]:
            raise InvalidStake(f"Mode {mode.name.lower()} is not enabled for this machine", request_id)
        if stake.variant != config.variant:
            raise InvalidStake(f"Machine expects a {config.variant.value} stake", request_id)
        if config.variant == GameVariant.WAYS:
            allowed = (config.baseBet, config.baseBet + config.kickerAmount)
            if stake.betAmount not in allowed:
                raise InvalidStake(f"Bet amount must be one of {allowed[0]} or {allowed[1]}", request_id)
        else:
            if stake.paylines > config.maxPaylines:
                raise InvalidStake(f"At most {config.maxPaylines} paylines", request_id)
            if stake.total < config.minBet or (config.maxBet and stake.total > config.maxBet):
                raise InvalidStake(f"Total bet must be between {config.minBet} and {config.maxBet}", request_id)
        if mode == SpinMode.BONUS and self.credit_balance.bonusSpins <= 0:
            raise InvalidStake("No bonus spins available", request_id)

    # spin submission

    def submit_spin(self, request: SpinRequest) -> QueueEntry:
        """
        Validate, reserve and enqueue a spin, then submit it in the background.

        A repeated clientId returns the entry already on record and submits nothing.
        """
        existing = self.queue.find_by_client_id(request.clientId)
        if existing is not None:
            logger.info("Duplicate spin request: clientId=%s status=%s", request.clientId, existing.status.value)
            return existing
        self.validate_stake(request.stake, request.mode, request.clientId)
        queued = len(self.queue.non_terminal())
        try:
            self.ledger.reserve(request.reservation, queued)
        except InsufficientFunds as exc:
            exc.request_id = request.clientId
            logger.info(
                "Spin refused: clientId=%s required=%s available=%s queued=%s",
                request.clientId,
                exc.required,
                exc.available,
                queued,
            )
            raise
        entry = QueueEntry.from_request(request)
        self.queue.append(entry)
        self._in_flight.add(entry.clientId)
        self.last_stake = request.stake
        logger.info(
            "Spin queued: clientId=%s mode=%s total=%s reserved=%s queued=%s",
            entry.clientId,
            entry.mode.name,
            request.stake.total,
            self.ledger.reserved,
            queued + 1,
        )
        self._spawn(self._process(entry))
        self._emit_balance()
        self._queue_changed()
        return entry

    def spin_variant(self, stake: Stake, mode: SpinMode) -> QueueEntry:
        return self.submit_spin(SpinRequest(clientId=new_client_id(), stake=stake, mode=mode))

    def place_bet(self, stake: Stake) -> QueueEntry:
        return self.spin_variant(stake, SpinMode.NETWORK)

    async def spin_and_wait(self, stake: Stake, mode: SpinMode = SpinMode.NETWORK) -> QueueEntry:
        entry = self.spin_variant(stake, mode)
        return await self.wait_for(entry.clientId)

    async def wait_for(self, client_id: str) -> QueueEntry:
        """Resolve once the entry is terminal and the post-spin balance refresh has run."""
        entry = self.queue.find_by_client_id(client_id)
        if entry is None:
            raise CorrelationMiss(f"No entry for clientId={client_id}", client_id)
        if client_id not in self._in_flight:
            return entry
        future = asyncio.get_running_loop().create_future()
        self._waiters.setdefault(client_id, []).append(future)
        return await future

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def _process(self, entry: QueueEntry) -> None:
        request = entry.to_request()
        outcome: Optional[Outcome] = None
        failure: Optional[SpinBridgeError] = None
        try:
            async with self._submit_lock:
                receipt = await self.adapter.submit_spin(request, self.wallet_address)
                self._acknowledge(entry, receipt.betKey, receipt.txId)
            status = await self.adapter.wait_for_outcome(receipt)
            outcome = verify_outcome(status.to_outcome(request.stake.total), request.stake.total, self.settings)
        except asyncio.CancelledError:
            raise
        except SpinBridgeError as exc:
            failure = exc
        except Exception as exc:
            logger.exception("Unexpected error processing spin: clientId=%s", entry.clientId)
            failure = TransactionRejected(str(exc), entry.clientId)
        await self._settle(entry, outcome, failure)

    def _acknowledge(self, entry: QueueEntry, engine_id: str, tx_id: Optional[str]) -> None:
        target = self.queue.oldest_unassigned_pending()
        if target is not entry:
            logger.warning(
                "Receipt order mismatch: processing clientId=%s oldest pending=%s",
                entry.clientId,
                target.clientId if target else None,
            )
        entry.mark_submitted(engine_id, tx_id)
        logger.info("Spin submitted: clientId=%s engineId=%s txId=%s", entry.clientId, engine_id, tx_id)
        self.events.emit(EventType.SUBMISSION, SubmissionEvent(entry.clientId, engine_id, tx_id))
        self._queue_changed()

    async def _settle(
        self,
        entry: QueueEntry,
        outcome: Optional[Outcome],
        failure: Optional[SpinBridgeError],
    ) -> None:
        """
        Refresh the confirmed balance first, then resolve the entry and release its
        reservation in one step, then tell listeners.

        Until the refresh returns the entry stays in flight, so its stake is held on
        both sides of the ledger and a winning outcome is not spendable yet.
        """
        refresh_error: Optional[SpinBridgeError] = None
        try:
            await self.refresh_balance(notify=False)
            await self.refresh_credit_balance()
        except SpinBridgeError as exc:
            logger.warning("Refresh after spin failed: clientId=%s code=%s message=%s", entry.clientId, exc.code, exc.message)
            refresh_error = exc

        debited = entry.status == EntryStatus.SUBMITTED
        if outcome is not None:
            settled = entry.mark_completed(outcome)
        else:
            settled = entry.mark_failed(failure.message)
        if settled:
            self.ledger.release(entry.reservation)
            if debited:
                # the stake has left the chain balance and no longer counts as in flight
                self.ledger.set_confirmed(self.ledger.confirmed - entry.reservation)
        self._emit_balance()

        if settled and outcome is not None:
            logger.info(
                "Spin completed: clientId=%s engineId=%s winnings=%s winLevel=%s",
                entry.clientId,
                entry.engineId,
                outcome.winnings,
                outcome.winLevel.value,
            )
            self.events.emit(EventType.OUTCOME, OutcomeEvent(entry.clientId, entry.engineId, outcome))
        elif settled:
            logger.warning(
                "Spin failed: clientId=%s engineId=%s code=%s message=%s",
                entry.clientId,
                entry.engineId,
                failure.code,
                failure.message,
            )
            self._emit_error(failure, entry.clientId)
        if refresh_error is not None:
            self._emit_error(refresh_error)
        self._queue_changed()

        dropped = self.queue.trim(self.settings.authority_history_size)
        if dropped:
            logger.debug("Trimmed history: dropped=%s remaining=%s", len(dropped), len(self.queue))
            self._queue_changed()
        self._in_flight.discard(entry.clientId)
        for future in self._waiters.pop(entry.clientId, []):
            if not future.done():
                future.set_result(entry)

    # authoritative refresh

    async def refresh_balance(self, notify: bool = True) -> dict:
        self._require_initialized()
        async with self._submit_lock:
            chain_balance = await self.adapter.get_balance(self.wallet_address)
            # stakes of submitted bets are already debited on chain but still reserved here
            in_flight = sum(e.reservation for e in self.queue if e.status == EntryStatus.SUBMITTED)
        self.ledger.set_confirmed(chain_balance + in_flight)
        if notify:
            self._emit_balance()
        return self.ledger.as_dict()

    async def refresh_credit_balance(self, notify: bool = True) -> CreditBalance:
        self._require_initialized()
        self.credit_balance = await self.adapter.get_credit_balance(self.wallet_address)
        if self._auto_mode == SpinMode.BONUS and self.scheduler.auto_mode:
            self.scheduler.update_counter(self.credit_balance.bonusSpins)
        if notify:
            self.events.emit(EventType.CREDIT_UPDATE, self.credit_balance)
        return self.credit_balance

    async def _poll_balance(self) -> None:
        while True:
            await asyncio.sleep(self.settings.balance_poll_seconds)
            try:
                await self.refresh_balance()
            except SpinBridgeError as exc:
                logger.warning("Balance poll failed: wallet=%s code=%s message=%s", self.wallet_address, exc.code, exc.message)
                self._emit_error(exc)

    # queries

    def get_balance(self) -> dict:
        return self.ledger.as_dict()

    def get_credit_balance(self) -> CreditBalance:
        return self.credit_balance

    def get_snapshot(self) -> List[QueueEntry]:
        return self.queue.snapshot()

    def pending_count(self) -> int:
        return len(self.queue.non_terminal())

    def get_state(self) -> dict:
        return {
            "initialized": self.initialized,
            "contractId": self.config.contractId if self.config else None,
            "balance": self.ledger.as_dict(),
            "creditBalance": self.credit_balance.model_dump(),
            "pendingCount": self.pending_count(),
            "queue": [e.model_dump(mode="json") for e in self.queue],
            "autoSpin": {
                "running": self.scheduler.running,
                "mode": self._auto_mode.name.lower(),
                "remaining": self.scheduler.counter,
            },
        }

    # auto spin

    def default_stake(self) -> Stake:
        config = self._require_initialized()
        if config.variant == GameVariant.WAYS:
            return Stake(betAmount=config.baseBet)
        per_line = max(1, -(-config.minBet // config.maxPaylines))
        return Stake(paylines=config.maxPaylines, betPerLine=per_line)

    def start_auto_spin(self, count: int, stake: Optional[Stake] = None, mode: SpinMode = SpinMode.NETWORK) -> bool:
        """Spin `count` times back to back with the given (or last used) stake."""
        if count <= 0:
            return False
        if self.scheduler.running:
            return False
        stake = stake or self.last_stake or self.default_stake()
        self.validate_stake(stake, mode)
        self._auto_stake = stake
        self._auto_mode = mode
        return self.scheduler.start(count)

    def start_bonus_spins(self, stake: Optional[Stake] = None) -> bool:
        """Keep spinning in bonus mode while the authoritative bonus counter is positive."""
        if self.scheduler.running:
            return False
        stake = stake or self.last_stake or self.default_stake()
        self.validate_stake(stake, SpinMode.BONUS)
        self._auto_stake = stake
        self._auto_mode = SpinMode.BONUS
        return self.scheduler.start(self.credit_balance.bonusSpins)

    def stop_auto_spin(self) -> None:
        self.scheduler.stop("stopped by user")

    async def _auto_spin_once(self) -> None:
        await self.spin_and_wait(self._auto_stake, self._auto_mode)
        if self._auto_mode != SpinMode.BONUS:
            # count-based runs are their own authority
            self.scheduler.update_counter(self.scheduler.counter - 1)
