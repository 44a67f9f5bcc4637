"""
Wire protocol between the sandboxed game surface and its host.

Every message is an Envelope {namespace, type, payload, requestId?}; the payload
model is selected by `type` through PAYLOAD_MODELS.
"""
from enum import Enum
from typing import Any, Optional, Type

from pydantic import BaseModel, Field

from spin_bridge.config import SpinMode
from spin_bridge.schemas.spin_schemas import Outcome, Stake, WaysWin, WinLevel, WinningLine


class MessageType(str, Enum):
    # client -> host
    INIT = "INIT"
    GET_BALANCE = "GET_BALANCE"
    GET_CONFIG = "GET_CONFIG"
    GET_CREDIT_BALANCE = "GET_CREDIT_BALANCE"
    GET_SPIN_QUEUE = "GET_SPIN_QUEUE"
    SPIN_REQUEST = "SPIN_REQUEST"
    EXIT = "EXIT"
    # host -> client
    CONFIG = "CONFIG"
    BALANCE_UPDATE = "BALANCE_UPDATE"
    BALANCE_RESPONSE = "BALANCE_RESPONSE"
    CREDIT_BALANCE = "CREDIT_BALANCE"
    SPIN_SUBMITTED = "SPIN_SUBMITTED"
    OUTCOME = "OUTCOME"
    SPIN_QUEUE = "SPIN_QUEUE"
    ERROR = "ERROR"


CLIENT_MESSAGE_TYPES = frozenset({
    MessageType.INIT,
    MessageType.GET_BALANCE,
    MessageType.GET_CONFIG,
    MessageType.GET_CREDIT_BALANCE,
    MessageType.GET_SPIN_QUEUE,
    MessageType.SPIN_REQUEST,
    MessageType.EXIT,
})

HOST_MESSAGE_TYPES = frozenset(MessageType) - CLIENT_MESSAGE_TYPES


class Envelope(BaseModel):
    namespace: str
    type: MessageType
    payload: dict[str, Any] = Field(default_factory=dict)
    requestId: Optional[str] = None

    def parse_payload(self) -> BaseModel:
        return PAYLOAD_MODELS[self.type].model_validate(self.payload)


class EmptyPayload(BaseModel):
    pass


class InitPayload(BaseModel):
    contractId: Optional[str] = None


class SpinRequestPayload(BaseModel):
    clientId: str
    stake: Stake
    mode: SpinMode = SpinMode.NETWORK


class BetLimits(BaseModel):
    minBet: int
    maxBet: int
    maxPaylines: int
    baseBet: int
    kickerAmount: int


class ConfigPayload(BaseModel):
    contractId: str
    variant: str
    limits: BetLimits
    rtp: float
    houseEdge: float
    modeEnabled: int
    jackpotAmount: int = 0


class BalancePayload(BaseModel):
    confirmed: int
    available: int
    reserved: int = 0


class CreditBalancePayload(BaseModel):
    credits: int
    bonusSpins: int


class SpinSubmittedPayload(BaseModel):
    id: str
    clientId: Optional[str] = None
    txId: Optional[str] = None


class OutcomePayload(BaseModel):
    id: str
    grid: list[list[str]]
    winnings: int = Field(0, ge=0)
    winLevel: WinLevel = WinLevel.NONE
    winningLines: Optional[list[WinningLine]] = None
    waysWins: Optional[list[WaysWin]] = None
    bonusSpinsAwarded: int = Field(0, ge=0)
    jackpotHit: bool = False
    jackpotAmount: int = Field(0, ge=0)

    @classmethod
    def from_outcome(cls, spin_id: str, outcome: Outcome) -> "OutcomePayload":
        return cls(id=spin_id, **outcome.model_dump())

    def to_outcome(self) -> Outcome:
        return Outcome.model_validate(self.model_dump(exclude={"id"}))


class SpinQueuePayload(BaseModel):
    # QueueEntry dicts; kept loose so the spin_queue module stays free of wire concerns
    entries: list[dict[str, Any]]
    pendingCount: int = 0
    reservedBalance: int = 0


class ErrorPayload(BaseModel):
    code: str = "UNKNOWN"
    message: str
    recoverable: bool = True
    requestId: Optional[str] = None


PAYLOAD_MODELS: dict[MessageType, Type[BaseModel]] = {
    MessageType.INIT: InitPayload,
    MessageType.GET_BALANCE: EmptyPayload,
    MessageType.GET_CONFIG: EmptyPayload,
    MessageType.GET_CREDIT_BALANCE: EmptyPayload,
    MessageType.GET_SPIN_QUEUE: EmptyPayload,
    MessageType.SPIN_REQUEST: SpinRequestPayload,
    MessageType.EXIT: EmptyPayload,
    MessageType.CONFIG: ConfigPayload,
    MessageType.BALANCE_UPDATE: BalancePayload,
    MessageType.BALANCE_RESPONSE: BalancePayload,
    MessageType.CREDIT_BALANCE: CreditBalancePayload,
    MessageType.SPIN_SUBMITTED: SpinSubmittedPayload,
    MessageType.OUTCOME: OutcomePayload,
    MessageType.SPIN_QUEUE: SpinQueuePayload,
    MessageType.ERROR: ErrorPayload,
}
