"""Config package"""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache

from dotenv import load_dotenv

# Load environment variables
load_dotenv()

from .bot_config import (
    BotConfig,
    BotConfigManager,
    MonitorConfig,
    SessionDefaults,
    SmartProfitDefaults,
    get_bot_config,
    get_config_manager,
)

# ============================================
# CREDENTIALS & ENDPOINTS
# ============================================
RPC_URL = os.getenv("RPC_URL", "https://api.mainnet-beta.solana.com")
JUPITER_API_KEY = os.getenv("JUPITER_API_KEY", "")
PUMPPORTAL_API_URL = os.getenv("PUMPPORTAL_API_URL", "https://pumpportal.fun/api/trade-local")

# Comma separated base58 secret keys for the volume wallets
WALLET_SECRETS = [s.strip() for s in os.getenv("VOLUME_BOT_WALLET_SECRETS", "").split(",") if s.strip()]

SOL_MINT = "So11111111111111111111111111111111111111112"

# ============================================
# PAPER TRADING CONFIG
# ============================================
# Default to True for safety if env var missing
PAPER_TRADING_MODE = os.getenv("PAPER_TRADING_MODE", "True").lower() == "true"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw == "":
        return default
    return float(raw)


@dataclass
class Settings:
    """Process settings read from the environment."""
    LOG_DIR: str = field(default_factory=lambda: os.getenv("LOG_DIR", "logs"))
    LOG_LEVEL: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    DB_PATH: str = field(default_factory=lambda: os.getenv("DB_PATH", "volume_bot.db"))
    CONFIG_PATH: str = field(default_factory=lambda: os.getenv("VOLUME_BOT_CONFIG", "config/volume_bot.yaml"))
    RPC_URL: str = RPC_URL
    JUPITER_API_KEY: str = JUPITER_API_KEY
    PUMPPORTAL_API_URL: str = PUMPPORTAL_API_URL
    PAPER_TRADING_MODE: bool = PAPER_TRADING_MODE
    PRIORITY_FEE_SOL: float = field(default_factory=lambda: _env_float("PRIORITY_FEE_SOL", 0.0005))
    # Paper broker simulation
    SIM_SLIPPAGE_PCT: float = field(default_factory=lambda: _env_float("SIM_SLIPPAGE_PCT", 0.005))
    SIM_FEE_BPS: float = field(default_factory=lambda: _env_float("SIM_FEE_BPS", 100.0))


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


__all__ = [
    "BotConfig",
    "BotConfigManager",
    "MonitorConfig",
    "SessionDefaults",
    "SmartProfitDefaults",
    "Settings",
    "get_settings",
    "get_bot_config",
    "get_config_manager",
    "RPC_URL",
    "JUPITER_API_KEY",
    "PUMPPORTAL_API_URL",
    "WALLET_SECRETS",
    "SOL_MINT",
    "PAPER_TRADING_MODE",
]
