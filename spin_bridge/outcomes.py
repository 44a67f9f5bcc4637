from spin_bridge.config import Settings, settings as default_settings
from spin_bridge.logging_config import get_logger
from spin_bridge.schemas.spin_schemas import Outcome, WinLevel

logger = get_logger(__name__)


def win_level(winnings: int, total_bet: int) -> WinLevel:
    """
    Classify a win by its multiple of the total bet.
    """
    if winnings <= 0:
        return WinLevel.NONE
    if total_bet <= 0:
        return WinLevel.SMALL
    multiplier = winnings / total_bet
    if multiplier >= 100:
        return WinLevel.JACKPOT
    if multiplier >= 20:
        return WinLevel.LARGE
    if multiplier >= 5:
        return WinLevel.MEDIUM
    return WinLevel.SMALL


def count_symbol(grid: list[list[str]], symbol: str) -> int:
    return sum(1 for reel in grid for cell in reel if cell == symbol)


def jackpot_corroborated(grid: list[list[str]], settings: Settings = default_settings) -> bool:
    return count_symbol(grid, settings.jackpot_symbol) >= settings.jackpot_trigger_count


def bonus_corroborated(grid: list[list[str]], settings: Settings = default_settings) -> bool:
    return count_symbol(grid, settings.bonus_symbol) >= settings.bonus_trigger_count


def verify_outcome(outcome: Outcome, total_bet: int, settings: Settings = default_settings) -> Outcome:
    """
    Return a copy of the outcome whose jackpot and bonus fields are backed by the grid.

    A reported jackpot or bonus award the grid does not show is dropped, and the
    jackpot amount is taken back out of the winnings.
    """
    updates = {}
    winnings = outcome.winnings
    if outcome.jackpotHit and not jackpot_corroborated(outcome.grid, settings):
        logger.warning(
            "Downgrading uncorroborated jackpot: jackpotAmount=%s grid=%s",
            outcome.jackpotAmount,
            outcome.grid,
        )
        winnings = max(0, winnings - outcome.jackpotAmount)
        updates.update(jackpotHit=False, jackpotAmount=0, winnings=winnings)
    elif not outcome.jackpotHit and outcome.jackpotAmount:
        updates["jackpotAmount"] = 0
    if outcome.bonusSpinsAwarded and not bonus_corroborated(outcome.grid, settings):
        logger.warning(
            "Dropping uncorroborated bonus award: bonusSpinsAwarded=%s grid=%s",
            outcome.bonusSpinsAwarded,
            outcome.grid,
        )
        updates["bonusSpinsAwarded"] = 0
    level = outcome.winLevel
    if "jackpotHit" in updates:
        level = win_level(winnings, total_bet)
        if level == WinLevel.JACKPOT:
            level = WinLevel.LARGE
    elif winnings == 0:
        level = WinLevel.NONE
    if level != outcome.winLevel:
        updates["winLevel"] = level
    if not updates:
        return outcome
    return outcome.model_copy(update=updates)
