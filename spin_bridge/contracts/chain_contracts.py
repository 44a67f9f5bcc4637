from typing import Literal, Optional

from pydantic import BaseModel

from spin_bridge.config import SpinMode
from spin_bridge.outcomes import win_level
from spin_bridge.schemas.spin_schemas import Outcome, SpinRequest, WaysWin, WinningLine


class ChainSpinSubmission(BaseModel):
    address: str
    mode: int
    reference: str
    betAmount: Optional[int] = None
    paylines: Optional[int] = None
    betPerLine: Optional[int] = None

    @classmethod
    def from_spin_request(cls, request: SpinRequest, address: str) -> "ChainSpinSubmission":
        stake = request.stake
        return cls(
            address=address,
            mode=int(request.mode),
            reference=request.clientId,
            betAmount=0 if request.mode == SpinMode.BONUS and stake.betAmount is not None else stake.betAmount,
            paylines=stake.paylines,
            betPerLine=stake.betPerLine,
        )


class ChainReceipt(BaseModel):
    txId: str
    betKey: str
    submitRound: int = 0
    claimRound: int = 0


class ChainSpinStatus(BaseModel):
    betKey: str
    status: Literal["pending", "confirmed", "rejected"]
    reason: Optional[str] = None
    grid: Optional[list[list[str]]] = None
    payout: int = 0
    winningLines: Optional[list[WinningLine]] = None
    waysWins: Optional[list[WaysWin]] = None
    bonusSpinsAwarded: int = 0
    jackpotHit: bool = False
    jackpotAmount: int = 0

    def to_outcome(self, total_bet: int) -> Outcome:
        return Outcome(
            grid=self.grid or [],
            winnings=self.payout,
            winLevel=win_level(self.payout, total_bet),
            winningLines=self.winningLines,
            waysWins=self.waysWins,
            bonusSpinsAwarded=self.bonusSpinsAwarded,
            jackpotHit=self.jackpotHit,
            jackpotAmount=self.jackpotAmount,
        )


class ChainBalance(BaseModel):
    address: str
    balance: int


class ChainCredits(BaseModel):
    address: str
    credits: int = 0
    bonusSpins: int = 0
