"""
Queue entry state machine and the ordered entry collection used by both the
authority and the sandboxed client.

Status only moves forward: Pending -> Submitted -> Completed | Failed | Expired.
Expired is a client-side inference, so a later authoritative Completed or Failed
still overrides it; nothing overrides Completed or Failed.
"""
import time
import uuid
from enum import Enum
from typing import Iterable, Iterator, List, Optional

from pydantic import BaseModel

from spin_bridge.config import SpinMode
from spin_bridge.schemas.spin_schemas import Outcome, SpinRequest, Stake


def new_client_id() -> str:
    return f"spin-{uuid.uuid4().hex}"


class EntryStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    COMPLETED = "completed"
    FAILED = "failed"
    EXPIRED = "expired"


TERMINAL_STATUSES = {EntryStatus.COMPLETED, EntryStatus.FAILED, EntryStatus.EXPIRED}

_STATUS_RANK = {
    EntryStatus.PENDING: 0,
    EntryStatus.SUBMITTED: 1,
    EntryStatus.EXPIRED: 2,
    EntryStatus.COMPLETED: 3,
    EntryStatus.FAILED: 3,
}


class QueueEntry(BaseModel):
    clientId: str
    engineId: Optional[str] = None
    stake: Stake
    mode: SpinMode = SpinMode.NETWORK
    status: EntryStatus = EntryStatus.PENDING
    createdAt: float
    submittedAt: Optional[float] = None
    completedAt: Optional[float] = None
    txId: Optional[str] = None
    outcome: Optional[Outcome] = None
    error: Optional[str] = None
    # client-side pruning marker, never set by the authority
    fading: bool = False

    @classmethod
    def from_request(cls, request: SpinRequest) -> "QueueEntry":
        return cls(
            clientId=request.clientId,
            stake=request.stake,
            mode=request.mode,
            createdAt=request.createdAt,
        )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def is_final(self) -> bool:
        """Completed or Failed; unlike Expired these can never change again."""
        return self.status in (EntryStatus.COMPLETED, EntryStatus.FAILED)

    @property
    def reservation(self) -> int:
        if self.mode == SpinMode.BONUS:
            return 0
        return self.stake.total

    def to_request(self) -> SpinRequest:
        return SpinRequest(clientId=self.clientId, stake=self.stake, mode=self.mode, createdAt=self.createdAt)

    def can_advance(self, status: EntryStatus) -> bool:
        return _STATUS_RANK[status] > _STATUS_RANK[self.status]

    def assign_engine_id(self, engine_id: str) -> bool:
        if self.engineId is not None:
            if self.engineId != engine_id:
                raise ValueError(
                    f"entry {self.clientId} already bound to engineId={self.engineId}, refusing {engine_id}"
                )
            return False
        self.engineId = engine_id
        return True

    def mark_submitted(self, engine_id: str, tx_id: Optional[str] = None) -> bool:
        self.assign_engine_id(engine_id)
        if not self.can_advance(EntryStatus.SUBMITTED):
            return False
        self.status = EntryStatus.SUBMITTED
        self.submittedAt = time.time()
        if tx_id:
            self.txId = tx_id
        return True

    def mark_completed(self, outcome: Outcome) -> bool:
        if not self.can_advance(EntryStatus.COMPLETED):
            return False
        self.status = EntryStatus.COMPLETED
        self.outcome = outcome
        self.completedAt = time.time()
        return True

    def mark_failed(self, error: str) -> bool:
        if not self.can_advance(EntryStatus.FAILED):
            return False
        self.status = EntryStatus.FAILED
        self.error = error
        self.completedAt = time.time()
        return True

    def mark_expired(self) -> bool:
        if not self.can_advance(EntryStatus.EXPIRED):
            return False
        self.status = EntryStatus.EXPIRED
        self.completedAt = time.time()
        return True


class SpinQueue:
    """
    Ordered collection of queue entries, oldest first.
    """

    def __init__(self, entries: Optional[Iterable[QueueEntry]] = None):
        self._entries: List[QueueEntry] = list(entries or [])

    def __iter__(self) -> Iterator[QueueEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def append(self, entry: QueueEntry) -> None:
        self._entries.append(entry)

    def remove(self, entry: QueueEntry) -> None:
        self._entries = [e for e in self._entries if e is not entry]

    def replace(self, entries: Iterable[QueueEntry]) -> None:
        self._entries = list(entries)

    def find_by_client_id(self, client_id: Optional[str]) -> Optional[QueueEntry]:
        if not client_id:
            return None
        return next((e for e in self._entries if e.clientId == client_id), None)

    def find_by_engine_id(self, engine_id: Optional[str]) -> Optional[QueueEntry]:
        if not engine_id:
            return None
        return next((e for e in self._entries if e.engineId == engine_id), None)

    def match(self, spin_id: Optional[str]) -> Optional[QueueEntry]:
        """Match by engineId first, then by clientId for entries whose ack never arrived."""
        return self.find_by_engine_id(spin_id) or self.find_by_client_id(spin_id)

    def oldest_unassigned_pending(self) -> Optional[QueueEntry]:
        return next(
            (e for e in self._entries if e.status == EntryStatus.PENDING and e.engineId is None),
            None,
        )

    def non_terminal(self) -> List[QueueEntry]:
        return [e for e in self._entries if not e.is_terminal]

    def reserved_total(self) -> int:
        return sum(e.reservation for e in self._entries if not e.is_terminal)

    def trim(self, max_size: int) -> List[QueueEntry]:
        """
        Drop the oldest Completed/Failed entries until at most max_size remain.
        In-flight and Expired entries are always kept. Returns what was dropped.
        """
        excess = len(self._entries) - max_size
        if excess <= 0:
            return []
        dropped = [e for e in self._entries if e.is_final][:excess]
        dropped_ids = {id(e) for e in dropped}
        self._entries = [e for e in self._entries if id(e) not in dropped_ids]
        return dropped

    def snapshot(self) -> List[QueueEntry]:
        return [e.model_copy(deep=True) for e in self._entries]
