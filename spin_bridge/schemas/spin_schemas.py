import time
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from spin_bridge.config import GameVariant, SpinMode


class WinLevel(str, Enum):
    NONE = "none"
    SMALL = "small"
    MEDIUM = "medium"
    LARGE = "large"
    JACKPOT = "jackpot"


class Stake(BaseModel):
    """
    Bet amount and shape: paylines x betPerLine for line games, a flat betAmount for ways-to-win.
    """
    model_config = ConfigDict(frozen=True)

    paylines: Optional[int] = Field(None, ge=1)
    betPerLine: Optional[int] = Field(None, ge=0)
    betAmount: Optional[int] = Field(None, ge=0)

    @model_validator(mode="after")
    def _check_shape(self) -> "Stake":
        has_lines = self.paylines is not None or self.betPerLine is not None
        has_ways = self.betAmount is not None
        if has_lines == has_ways:
            raise ValueError("stake needs either paylines and betPerLine, or betAmount")
        if has_lines and (self.paylines is None or self.betPerLine is None):
            raise ValueError("line stakes need both paylines and betPerLine")
        return self

    @property
    def variant(self) -> GameVariant:
        return GameVariant.WAYS if self.betAmount is not None else GameVariant.LINES

    @property
    def total(self) -> int:
        if self.betAmount is not None:
            return self.betAmount
        return self.paylines * self.betPerLine


class SpinRequest(BaseModel):
    model_config = ConfigDict(frozen=True)

    clientId: str
    stake: Stake
    mode: SpinMode = SpinMode.NETWORK
    createdAt: float = Field(default_factory=time.time)

    @property
    def reservation(self) -> int:
        # bonus spins are paid for by the bonus counter, not the balance
        if self.mode == SpinMode.BONUS:
            return 0
        return self.stake.total


class WinningLine(BaseModel):
    paylineIndex: int
    symbol: str
    matchCount: int
    payout: int


class WaysWin(BaseModel):
    symbol: str
    ways: int
    matchLength: int
    payout: int
    wildMultiplier: int = 1


class Outcome(BaseModel):
    grid: list[list[str]]
    winnings: int = Field(0, ge=0)
    winLevel: WinLevel = WinLevel.NONE
    winningLines: Optional[list[WinningLine]] = None
    waysWins: Optional[list[WaysWin]] = None
    bonusSpinsAwarded: int = Field(0, ge=0)
    jackpotHit: bool = False
    jackpotAmount: int = Field(0, ge=0)

    @model_validator(mode="after")
    def _check_win_shape(self) -> "Outcome":
        if self.winningLines is not None and self.waysWins is not None:
            raise ValueError("outcome carries either winningLines or waysWins, not both")
        return self


class MachineConfig(BaseModel):
    contractId: str
    variant: GameVariant = GameVariant.WAYS
    minBet: int = 0
    maxBet: int = 0
    maxPaylines: int = 20
    baseBet: int = 40
    kickerAmount: int = 20
    rtpTarget: float = 96.5
    houseEdge: float = 3.5
    modeEnabled: int = 7
    jackpotAmount: int = 0


class CreditBalance(BaseModel):
    credits: int = 0
    bonusSpins: int = 0
