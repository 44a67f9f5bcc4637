from enum import Enum, IntEnum
from pydantic import AnyHttpUrl
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Literal, Optional


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env")

    message_namespace: str = "com.houseofvoi"
    log_level: str = "INFO"
    chain_base_url: AnyHttpUrl = "http://mock-chain:8003"
    chain_request_timeout_seconds: float = 10.0
    bearer_token: Optional[str] = None
    wallet_address: str = "sandbox-wallet"
    chain_mode: Literal["http", "memory"] = "http"
    sandbox_starting_balance: int = 10_000
    sandbox_bonus_spins: int = 0
    max_retries: int = 3
    retry_backoff_seconds: float = 1.0
    confirmation_poll_seconds: float = 1.0
    confirmation_timeout_seconds: float = 60.0
    balance_poll_seconds: float = 30.0
    authority_history_size: int = 50
    queue_prune_threshold: int = 10
    queue_fade_seconds: float = 1.5
    entry_expiry_seconds: float = 120.0
    snapshot_interval_seconds: float = 15.0
    auto_spin_interval_seconds: float = 0.5
    jackpot_symbol: str = "E"
    jackpot_trigger_count: int = 3
    bonus_symbol: str = "F"
    bonus_trigger_count: int = 2

settings = Settings()

class SpinMode(IntEnum):
    BONUS = 0
    CREDIT = 1
    NETWORK = 2
    TOKEN = 4

class GameVariant(str, Enum):
    LINES = "lines"
    WAYS = "ways"

# modeEnabled bitmask bit for each paid mode; bonus spins are always allowed
mode_enabled_bits = {
    SpinMode.CREDIT: 1,
    SpinMode.NETWORK: 2,
    SpinMode.TOKEN: 4,
}

ALL_MODES_ENABLED = 7
