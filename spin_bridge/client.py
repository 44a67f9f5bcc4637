import asyncio
from typing import Any, List, Optional

from spin_bridge.config import Settings, SpinMode, settings as default_settings
from spin_bridge.logging_config import get_logger
from spin_bridge.reconciler import QueueReconciler
from spin_bridge.scheduler import AutoSpinScheduler
from spin_bridge.schemas.messages import ConfigPayload, CreditBalancePayload, Envelope, InitPayload, MessageType
from spin_bridge.schemas.spin_schemas import Stake
from spin_bridge.spin_queue import QueueEntry
from spin_bridge.transport import ChannelTransport

logger = get_logger(__name__)


class GameClient:
    """
    Sandboxed game side of the channel: user actions, the local queue and
    bonus auto-continuation. It never touches balances; it only asks.
    """

    def __init__(self, transport: ChannelTransport, stake: Stake, settings: Settings = default_settings):
        self.transport = transport
        self.settings = settings
        self.stake = stake
        self.mode = SpinMode.NETWORK
        self.config: Optional[ConfigPayload] = None
        self.credit_balance: Optional[CreditBalancePayload] = None
        self.reconciler = QueueReconciler(transport, settings)
        self.scheduler = AutoSpinScheduler(
            self._bonus_spin_once,
            settings.auto_spin_interval_seconds,
            name="client:bonus",
        )
        self._credit_waiters: List[asyncio.Future] = []

    @property
    def queue(self):
        return self.reconciler.queue

    async def connect(self, contract_id: Optional[str] = None) -> None:
        await self.transport.send(MessageType.INIT, InitPayload(contractId=contract_id))
        self.reconciler.start()

    async def reconnect(self) -> None:
        await self.reconciler.on_reconnect()

    async def close(self) -> None:
        self.scheduler.stop("session closed")
        await self.reconciler.stop()
        await self.transport.send(MessageType.EXIT)

    async def handle_raw(self, raw: Any) -> Optional[Envelope]:
        envelope = self.transport.decode(raw)
        if envelope is None:
            return None
        if envelope.type == MessageType.CONFIG:
            self.config = envelope.parse_payload()
        elif envelope.type == MessageType.CREDIT_BALANCE:
            self._on_credit_balance(envelope.parse_payload())
        else:
            self.reconciler.handle_message(envelope)
        return envelope

    def _on_credit_balance(self, payload: CreditBalancePayload) -> None:
        self.credit_balance = payload
        self.scheduler.update_counter(payload.bonusSpins)
        waiters, self._credit_waiters = self._credit_waiters, []
        for future in waiters:
            if not future.done():
                future.set_result(payload)

    async def request_credit_balance(self, timeout: Optional[float] = None) -> CreditBalancePayload:
        future = asyncio.get_running_loop().create_future()
        self._credit_waiters.append(future)
        await self.transport.send(MessageType.GET_CREDIT_BALANCE)
        return await asyncio.wait_for(future, timeout or self.settings.confirmation_timeout_seconds)

    # user actions

    def set_stake(self, stake: Stake) -> None:
        self.scheduler.stop("bet changed")
        self.stake = stake

    def set_mode(self, mode: SpinMode) -> None:
        self.scheduler.stop("mode changed")
        self.mode = mode

    def exit_auto_mode(self) -> None:
        self.scheduler.stop("auto mode exited")

    async def spin(self) -> QueueEntry:
        return await self.reconciler.request_spin(self.stake, self.mode)

    def start_bonus_auto(self) -> bool:
        if self.credit_balance is None or self.credit_balance.bonusSpins <= 0:
            return False
        return self.scheduler.start(self.credit_balance.bonusSpins)

    async def _bonus_spin_once(self) -> None:
        entry = await self.reconciler.request_spin(self.stake, SpinMode.BONUS)
        resolved = await self.reconciler.wait_for(entry.clientId, self.settings.entry_expiry_seconds)
        logger.debug("Bonus spin resolved: clientId=%s status=%s", resolved.clientId, resolved.status.value)
        # the counter that gates the next tick comes from the authority, never from the optimistic copy
        await self.request_credit_balance()
