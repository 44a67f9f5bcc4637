import asyncio
import inspect
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from pydantic import BaseModel, ValidationError

from spin_bridge.engine import SpinEngine
from spin_bridge.errors import NotInitialized, SpinBridgeError
from spin_bridge.events import BalanceEvent, ErrorEvent, OutcomeEvent, SubmissionEvent, Unsubscribe
from spin_bridge.logging_config import get_logger
from spin_bridge.schemas.messages import (
    CLIENT_MESSAGE_TYPES,
    BalancePayload,
    BetLimits,
    ConfigPayload,
    CreditBalancePayload,
    EmptyPayload,
    ErrorPayload,
    InitPayload,
    MessageType,
    OutcomePayload,
    SpinQueuePayload,
    SpinRequestPayload,
    SpinSubmittedPayload,
)
from spin_bridge.schemas.spin_schemas import CreditBalance, SpinRequest
from spin_bridge.transport import ChannelTransport

logger = get_logger(__name__)

ExitCallback = Callable[[], Union[None, Awaitable[None]]]


class GameBridge:
    """
    Serves one game session over a channel on behalf of a SpinEngine.

    Inbound messages are dispatched by type; engine events and replies are
    queued on one outbox and sent in order by a single pump task.
    """

    def __init__(self, engine: SpinEngine, transport: ChannelTransport, on_exit: Optional[ExitCallback] = None):
        self.engine = engine
        self.transport = transport
        self.on_exit = on_exit
        self._outbox: asyncio.Queue = asyncio.Queue()
        self._pump_task: Optional[asyncio.Task] = None
        self._unsubscribes: list[Unsubscribe] = []
        self._handlers: Dict[MessageType, Callable[[Any, Optional[str]], Awaitable[None]]] = {
            MessageType.INIT: self._handle_init,
            MessageType.GET_BALANCE: self._handle_get_balance,
            MessageType.GET_CONFIG: self._handle_get_config,
            MessageType.GET_CREDIT_BALANCE: self._handle_get_credit_balance,
            MessageType.GET_SPIN_QUEUE: self._handle_get_spin_queue,
            MessageType.SPIN_REQUEST: self._handle_spin_request,
            MessageType.EXIT: self._handle_exit,
        }
        missing = CLIENT_MESSAGE_TYPES - self._handlers.keys()
        if missing:
            raise RuntimeError(f"no handler for {sorted(t.value for t in missing)}")

    def start(self) -> None:
        if self._pump_task is not None:
            return
        self._pump_task = asyncio.create_task(self._pump())
        self._unsubscribes = [
            self.engine.on_submission(self._on_submission),
            self.engine.on_outcome(self._on_outcome),
            self.engine.on_error(self._on_error),
            self.engine.on_balance(self._on_balance),
            self.engine.on_credit_balance(self._on_credit_balance),
            self.engine.on_queue_changed(self._on_queue_changed),
        ]

    async def drain(self) -> None:
        await self._outbox.join()

    async def destroy(self) -> None:
        for unsubscribe in self._unsubscribes:
            unsubscribe()
        self._unsubscribes = []
        if self._pump_task is not None:
            self._pump_task.cancel()
            try:
                await self._pump_task
            except asyncio.CancelledError:
                pass
            self._pump_task = None

    # outbound

    def post(self, message_type: MessageType, payload: Union[BaseModel, dict, None] = None, request_id: Optional[str] = None) -> None:
        self._outbox.put_nowait(self.transport.encode(message_type, payload, request_id))

    def post_error(self, code: str, message: str, request_id: Optional[str] = None, recoverable: bool = True) -> None:
        self.post(
            MessageType.ERROR,
            ErrorPayload(code=code, message=message, recoverable=recoverable, requestId=request_id),
            request_id,
        )

    async def _pump(self) -> None:
        while True:
            message = await self._outbox.get()
            try:
                await self.transport.send_raw(message)
            except Exception:  # noqa: BLE001
                logger.exception("Failed to deliver message: type=%s", message.get("type"))
            finally:
                self._outbox.task_done()

    def _balance_payload(self) -> BalancePayload:
        return BalancePayload(**self.engine.get_balance())

    def _credit_payload(self, credit: Optional[CreditBalance] = None) -> CreditBalancePayload:
        credit = credit or self.engine.get_credit_balance()
        return CreditBalancePayload(credits=credit.credits, bonusSpins=credit.bonusSpins)

    def _config_payload(self) -> ConfigPayload:
        config = self.engine.config
        if config is None:
            raise NotInitialized("Engine is not initialized")
        return ConfigPayload(
            contractId=config.contractId,
            variant=config.variant.value,
            limits=BetLimits(
                minBet=config.minBet,
                maxBet=config.maxBet,
                maxPaylines=config.maxPaylines,
                baseBet=config.baseBet,
                kickerAmount=config.kickerAmount,
            ),
            rtp=config.rtpTarget,
            houseEdge=config.houseEdge,
            modeEnabled=config.modeEnabled,
            jackpotAmount=config.jackpotAmount,
        )

    def queue_payload(self) -> SpinQueuePayload:
        entries = self.engine.get_snapshot()
        return SpinQueuePayload(
            entries=[e.model_dump(mode="json", exclude={"fading"}) for e in entries],
            pendingCount=sum(1 for e in entries if not e.is_terminal),
            reservedBalance=self.engine.ledger.reserved,
        )

    # engine events

    def _on_submission(self, event: SubmissionEvent) -> None:
        self.post(
            MessageType.SPIN_SUBMITTED,
            SpinSubmittedPayload(id=event.engine_id, clientId=event.client_id, txId=event.tx_id),
            event.client_id,
        )

    def _on_outcome(self, event: OutcomeEvent) -> None:
        spin_id = event.engine_id or event.client_id
        self.post(MessageType.OUTCOME, OutcomePayload.from_outcome(spin_id, event.outcome), event.client_id)

    def _on_error(self, event: ErrorEvent) -> None:
        self.post_error(event.code, event.message, event.request_id, event.recoverable)

    def _on_balance(self, event: BalanceEvent) -> None:
        self.post(
            MessageType.BALANCE_UPDATE,
            BalancePayload(confirmed=event.confirmed, available=event.available, reserved=event.reserved),
        )

    def _on_credit_balance(self, credit: CreditBalance) -> None:
        self.post(MessageType.CREDIT_BALANCE, self._credit_payload(credit))

    def _on_queue_changed(self, _event: Any) -> None:
        self.post(MessageType.SPIN_QUEUE, self.queue_payload())

    # inbound

    async def handle_raw(self, raw: Any) -> None:
        envelope = self.transport.decode(raw)
        if envelope is None:
            return
        if envelope.type not in CLIENT_MESSAGE_TYPES:
            logger.debug("Ignoring host-bound message type on host side: type=%s", envelope.type.value)
            return
        try:
            payload = envelope.parse_payload()
        except ValidationError as exc:
            logger.warning("Invalid payload: type=%s requestId=%s errors=%s", envelope.type.value, envelope.requestId, exc.errors())
            self.post_error("INVALID_REQUEST", f"Invalid {envelope.type.value} payload", envelope.requestId)
            return
        try:
            await self._handlers[envelope.type](payload, envelope.requestId)
        except SpinBridgeError as exc:
            self.post_error(exc.code, exc.message, exc.request_id or envelope.requestId, exc.recoverable)
        except Exception as exc:  # noqa: BLE001
            logger.exception("Handler failed: type=%s requestId=%s", envelope.type.value, envelope.requestId)
            self.post_error("MESSAGE_HANDLER_ERROR", str(exc), envelope.requestId)

    async def _handle_init(self, payload: InitPayload, request_id: Optional[str]) -> None:
        if not self.engine.initialized:
            await self.engine.initialize()
        config = self.engine.config
        if payload.contractId and config is not None and payload.contractId != config.contractId:
            logger.warning("INIT for another machine: requested=%s serving=%s", payload.contractId, config.contractId)
        self.post(MessageType.CONFIG, self._config_payload(), request_id)
        self.post(MessageType.BALANCE_UPDATE, self._balance_payload(), request_id)
        self.post(MessageType.CREDIT_BALANCE, self._credit_payload(), request_id)
        self.post(MessageType.SPIN_QUEUE, self.queue_payload(), request_id)

    async def _handle_get_balance(self, _payload: EmptyPayload, request_id: Optional[str]) -> None:
        await self.engine.refresh_balance(notify=False)
        self.post(MessageType.BALANCE_RESPONSE, self._balance_payload(), request_id)

    async def _handle_get_config(self, _payload: EmptyPayload, request_id: Optional[str]) -> None:
        self.post(MessageType.CONFIG, self._config_payload(), request_id)

    async def _handle_get_credit_balance(self, _payload: EmptyPayload, request_id: Optional[str]) -> None:
        credit = await self.engine.refresh_credit_balance(notify=False)
        self.post(MessageType.CREDIT_BALANCE, self._credit_payload(credit), request_id)

    async def _handle_get_spin_queue(self, _payload: EmptyPayload, request_id: Optional[str]) -> None:
        self.post(MessageType.SPIN_QUEUE, self.queue_payload(), request_id)

    async def _handle_spin_request(self, payload: SpinRequestPayload, request_id: Optional[str]) -> None:
        duplicate = self.engine.queue.find_by_client_id(payload.clientId) is not None
        self.engine.submit_spin(SpinRequest(clientId=payload.clientId, stake=payload.stake, mode=payload.mode))
        if duplicate:
            # let the client resync the entry it re-sent
            self.post(MessageType.SPIN_QUEUE, self.queue_payload(), payload.clientId)

    async def _handle_exit(self, _payload: EmptyPayload, request_id: Optional[str]) -> None:
        logger.info("Game requested exit: wallet=%s", self.engine.wallet_address)
        self.engine.stop_auto_spin()
        if self.on_exit is not None:
            result = self.on_exit()
            if inspect.isawaitable(result):
                await result
