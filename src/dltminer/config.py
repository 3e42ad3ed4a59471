"""Application settings via pydantic-settings."""

import os
from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict

from dltminer.core.errors import ConfigurationError

MINING_MODES = ("solo", "pool")
# "process" runs each lane in its own interpreter for engines that hold the
# GIL; "thread" is for engines that release it.
LANE_EXECUTORS = ("process", "thread")


def _default_thread_count() -> int:
    return max(1, (os.cpu_count() or 4) // 2)


class Settings(BaseSettings):
    """Miner and bridge configuration loaded from environment variables with DLT_ prefix."""

    model_config = SettingsConfigDict(
        env_prefix="DLT_",
        env_file=".env",
        case_sensitive=False,
    )

    # --- Core ---
    app_version: str = "1.0.0"
    log_level: str = "INFO"
    log_format: str = "console"

    # --- Miner ---
    miner_address: str = ""
    mining_mode: str = "solo"
    thread_count: int = _default_thread_count()
    batch_size: int = 50_000
    lane_executor: str = "process"
    hashrate_report_interval: float = 0.5
    stats_interval: float = 10.0

    # --- Solo mode / node REST ---
    node_url: str = "http://localhost:8001"
    poll_interval: float = 3.0
    request_timeout: float = 10.0

    # --- Pool mode ---
    pool_url: str = "ws://localhost:3001"
    pool_client_id: str = "dlt-webminer/1.0"
    pool_share_bits: int = 20
    reconnect_delay: float = 5.0

    # --- Pool bridge ---
    bridge_host: str = "0.0.0.0"
    bridge_port: int = 3001
    bridge_pool_host: str = "localhost"
    bridge_pool_port: int = 3333
    bridge_allowed_origins: list[str] = [
        "https://webminer.dilithiumcoin.com",
        "http://localhost:8080",
        "http://localhost:3000",
        "http://127.0.0.1:8080",
    ]
    bridge_allow_missing_origin: bool = True

    def validate_miner(self) -> None:
        """Raise ConfigurationError if the miner cannot start with these settings."""
        if not self.miner_address:
            raise ConfigurationError("miner_address is required")
        if self.mining_mode not in MINING_MODES:
            raise ConfigurationError(f"Unknown mining mode: {self.mining_mode}")
        if self.thread_count < 1:
            raise ConfigurationError("thread_count must be at least 1")
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be at least 1")
        if self.lane_executor not in LANE_EXECUTORS:
            raise ConfigurationError(f"Unknown lane executor: {self.lane_executor}")
        if self.mining_mode == "solo" and not self.node_url:
            raise ConfigurationError("node_url is required in solo mode")
        if self.mining_mode == "pool" and not self.pool_url:
            raise ConfigurationError("pool_url is required in pool mode")

    def validate_bridge(self) -> None:
        """Raise ConfigurationError if the bridge has no usable upstream pool."""
        if not self.bridge_pool_host:
            raise ConfigurationError("bridge_pool_host is required")
        if not 0 < self.bridge_pool_port < 65536:
            raise ConfigurationError(f"Invalid bridge_pool_port: {self.bridge_pool_port}")


@lru_cache
def get_settings() -> Settings:
    """Get cached application settings."""
    return Settings()
