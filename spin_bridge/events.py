"""
Event registry for authority events (outcome, submission, balance-update, error,
credit-update, queue-changed).

Each subscribe call returns its own unsubscribe handle; one failing listener
never prevents delivery to the others.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from spin_bridge.logging_config import get_logger

logger = get_logger(__name__)

Listener = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class EventType(str, Enum):
    OUTCOME = "outcome"
    SUBMISSION = "submission"
    BALANCE_UPDATE = "balance_update"
    ERROR = "error"
    CREDIT_UPDATE = "credit_update"
    QUEUE_CHANGED = "queue_changed"


@dataclass(frozen=True)
class SubmissionEvent:
    client_id: str
    engine_id: str
    tx_id: Optional[str] = None


@dataclass(frozen=True)
class OutcomeEvent:
    client_id: str
    engine_id: Optional[str]
    outcome: Any


@dataclass(frozen=True)
class BalanceEvent:
    confirmed: int
    reserved: int
    available: int


@dataclass(frozen=True)
class ErrorEvent:
    code: str
    message: str
    recoverable: bool = True
    request_id: Optional[str] = None


class EventRegistry:
    def __init__(self) -> None:
        self._listeners: Dict[EventType, List[Listener]] = {}

    def subscribe(self, event_type: EventType, listener: Listener) -> Unsubscribe:
        self._listeners.setdefault(event_type, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(event_type, [])
            if listener in listeners:
                listeners.remove(listener)

        return unsubscribe

    def emit(self, event_type: EventType, event: Any = None) -> None:
        for listener in list(self._listeners.get(event_type, [])):
            try:
                listener(event)
            except Exception:  # noqa: BLE001
                logger.exception("Listener failed: event_type=%s listener=%r", event_type.value, listener)

    def listener_count(self, event_type: EventType) -> int:
        return len(self._listeners.get(event_type, []))

    def clear(self) -> None:
        self._listeners.clear()
