import asyncio
import itertools
from collections import deque
from typing import Dict, Iterable, List, Optional

from spin_bridge.config import SpinMode
from spin_bridge.contracts.chain_contracts import ChainReceipt, ChainSpinStatus, ChainSpinSubmission
from spin_bridge.errors import TransactionRejected
from spin_bridge.logging_config import get_logger
from spin_bridge.schemas.spin_schemas import CreditBalance, MachineConfig, Outcome, SpinRequest

logger = get_logger(__name__)

LOSING_GRID = [
    ["A", "B", "C"],
    ["D", "D", "D"],
    ["A", "B", "C"],
    ["D", "D", "D"],
    ["A", "B", "C"],
]


class InMemoryChainAdapter:
    """
    Sandbox chain: balances live in a dict and every bet waits until it is
    confirmed or rejected, either by hand or automatically with the next
    scripted outcome.
    """

    def __init__(
        self,
        contract_id: str = "sandbox",
        balances: Optional[Dict[str, int]] = None,
        bonus_spins: Optional[Dict[str, int]] = None,
        config: Optional[MachineConfig] = None,
        outcomes: Optional[Iterable[Outcome]] = None,
        auto_confirm: bool = False,
    ):
        self.config = config or MachineConfig(contractId=contract_id, minBet=1, maxBet=1_000_000)
        self.balances: Dict[str, int] = dict(balances or {})
        self.credits: Dict[str, CreditBalance] = {
            address: CreditBalance(bonusSpins=count) for address, count in (bonus_spins or {}).items()
        }
        self.scripted_outcomes = deque(outcomes or [])
        self.auto_confirm = auto_confirm
        self.submissions: List[ChainSpinSubmission] = []
        self.submit_error: Optional[Exception] = None
        self.closed = False
        self._bets: Dict[str, ChainSpinSubmission] = {}
        self._results: Dict[str, asyncio.Future] = {}
        self._counter = itertools.count(1)

    async def initialize(self) -> None:
        logger.info("In-memory chain ready: contract_id=%s accounts=%s", self.config.contractId, len(self.balances))

    async def get_machine_config(self) -> MachineConfig:
        return self.config

    async def submit_spin(self, request: SpinRequest, address: str) -> ChainReceipt:
        if self.submit_error is not None:
            error, self.submit_error = self.submit_error, None
            raise error
        submission = ChainSpinSubmission.from_spin_request(request, address)
        credit = self.credits.setdefault(address, CreditBalance())
        if request.mode == SpinMode.BONUS:
            if credit.bonusSpins <= 0:
                raise TransactionRejected("no bonus spins left")
            credit.bonusSpins -= 1
        else:
            balance = self.balances.get(address, 0)
            if balance < request.reservation:
                raise TransactionRejected(f"balance {balance} below bet {request.reservation}")
            self.balances[address] = balance - request.reservation
        round_number = next(self._counter)
        bet_key = f"bet-{round_number}"
        self.submissions.append(submission)
        self._bets[bet_key] = submission
        self._results[bet_key] = asyncio.get_running_loop().create_future()
        if self.auto_confirm:
            self.confirm(bet_key)
        return ChainReceipt(
            txId=f"tx-{round_number}",
            betKey=bet_key,
            submitRound=round_number,
            claimRound=round_number + 1,
        )

    @property
    def open_bets(self) -> List[str]:
        return [key for key, result in self._results.items() if not result.done()]

    def _next_outcome(self) -> Outcome:
        if self.scripted_outcomes:
            return self.scripted_outcomes.popleft()
        return Outcome(grid=LOSING_GRID)

    def confirm(self, bet_key: str, outcome: Optional[Outcome] = None) -> None:
        outcome = outcome or self._next_outcome()
        submission = self._bets[bet_key]
        self.balances[submission.address] = self.balances.get(submission.address, 0) + outcome.winnings
        if outcome.bonusSpinsAwarded:
            self.credits.setdefault(submission.address, CreditBalance()).bonusSpins += outcome.bonusSpinsAwarded
        self._results[bet_key].set_result(
            ChainSpinStatus(
                betKey=bet_key,
                status="confirmed",
                grid=outcome.grid,
                payout=outcome.winnings,
                winningLines=outcome.winningLines,
                waysWins=outcome.waysWins,
                bonusSpinsAwarded=outcome.bonusSpinsAwarded,
                jackpotHit=outcome.jackpotHit,
                jackpotAmount=outcome.jackpotAmount,
            )
        )

    def reject(self, bet_key: str, reason: str = "rejected by network") -> None:
        submission = self._bets[bet_key]
        # a rejected bet never left the account
        if submission.mode == SpinMode.BONUS:
            self.credits.setdefault(submission.address, CreditBalance()).bonusSpins += 1
        else:
            stake = submission.betAmount if submission.betAmount is not None else submission.paylines * submission.betPerLine
            self.balances[submission.address] = self.balances.get(submission.address, 0) + stake
        self._results[bet_key].set_result(ChainSpinStatus(betKey=bet_key, status="rejected", reason=reason))

    async def wait_for_outcome(self, receipt: ChainReceipt) -> ChainSpinStatus:
        status = await asyncio.shield(self._results[receipt.betKey])
        if status.status == "rejected":
            raise TransactionRejected(status.reason or "rejected by network")
        return status

    async def get_balance(self, address: str) -> int:
        return self.balances.get(address, 0)

    async def get_credit_balance(self, address: str) -> CreditBalance:
        return self.credits.get(address, CreditBalance()).model_copy()

    async def aclose(self) -> None:
        self.closed = True
