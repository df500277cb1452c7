"""
Volume Bot Configuration Manager

Loads session/smart-profit defaults and monitor timing from a YAML or JSON
file. Missing files are created with defaults.
"""

import json
import logging
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from volume_bot.core.models import SessionSettings, SmartProfitDefaults

logger = logging.getLogger(__name__)

# Re-exported name used by callers that only need the pacing defaults
SessionDefaults = SessionSettings


@dataclass
class MonitorConfig:
    """Smart profit polling configuration"""
    poll_interval_sec: float = 2.0
    backoff_interval_sec: float = 10.0
    failures_before_backoff: int = 3
    stale_after_sec: float = 60.0


@dataclass
class BotConfig:
    """Complete volume bot configuration"""
    version: str = "1.0"

    session_defaults: SessionSettings = field(default_factory=SessionSettings)
    smart_profit_defaults: SmartProfitDefaults = field(default_factory=SmartProfitDefaults)
    monitor: MonitorConfig = field(default_factory=MonitorConfig)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "version": self.version,
            "session_defaults": self.session_defaults.to_dict(),
            "smart_profit_defaults": self.smart_profit_defaults.to_dict(),
            "monitor": asdict(self.monitor),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BotConfig":
        return cls(
            version=data.get("version", "1.0"),
            session_defaults=SessionSettings(**data.get("session_defaults", {})),
            smart_profit_defaults=SmartProfitDefaults(**data.get("smart_profit_defaults", {})),
            monitor=MonitorConfig(**data.get("monitor", {})),
        )


class BotConfigManager:
    """
    Configuration manager for the volume bot.

    Usage:
        manager = BotConfigManager("config/volume_bot.yaml")
        config = manager.get_config()
        interval = config.monitor.poll_interval_sec
    """

    DEFAULT_CONFIG_PATH = "config/volume_bot.yaml"

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = Path(config_path or self.DEFAULT_CONFIG_PATH)
        self._config: Optional[BotConfig] = None
        self._last_modified: float = 0

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        self._load_or_create()

    def _load_or_create(self):
        """Load existing config or create default"""
        if self.config_path.exists():
            self._config = self._load_from_file()
            logger.info(f"Volume bot config loaded from {self.config_path}")
        else:
            self._config = BotConfig()
            self.save_config(self._config)
            logger.info(f"Default volume bot config created at {self.config_path}")

    def _load_from_file(self) -> BotConfig:
        try:
            with open(self.config_path, 'r', encoding='utf-8') as f:
                if self.config_path.suffix in ['.yaml', '.yml']:
                    data = yaml.safe_load(f)
                else:
                    data = json.load(f)

            self._last_modified = self.config_path.stat().st_mtime
            return BotConfig.from_dict(data or {})

        except Exception as e:
            logger.error(f"Error loading config {self.config_path}: {e}")
            return BotConfig()

    def save_config(self, config: Optional[BotConfig] = None):
        """Save config to file"""
        config = config or self._config

        try:
            data = config.to_dict()

            with open(self.config_path, 'w', encoding='utf-8') as f:
                if self.config_path.suffix in ['.yaml', '.yml']:
                    yaml.safe_dump(data, f, default_flow_style=False, sort_keys=False, allow_unicode=True)
                else:
                    json.dump(data, f, indent=2, ensure_ascii=False)

            self._last_modified = self.config_path.stat().st_mtime
            logger.info(f"Volume bot config saved to {self.config_path}")

        except Exception as e:
            logger.error(f"Error saving config: {e}")

    def get_config(self) -> BotConfig:
        if self._config is None:
            self._config = BotConfig()
        return self._config

    def reload(self) -> bool:
        """Reload config from file if it changed on disk"""
        if not self.config_path.exists():
            return False
        if self.config_path.stat().st_mtime <= self._last_modified:
            return False
        self._config = self._load_from_file()
        logger.info("Volume bot config reloaded")
        return True

    def validate(self) -> List[str]:
        """Validate current config, return list of errors"""
        config = self.get_config()
        errors = list(config.session_defaults.validate())
        errors.extend(config.smart_profit_defaults.validate())

        monitor = config.monitor
        if monitor.poll_interval_sec <= 0:
            errors.append("poll_interval_sec must be > 0")
        if monitor.backoff_interval_sec < monitor.poll_interval_sec:
            errors.append("backoff_interval_sec must be >= poll_interval_sec")
        if monitor.failures_before_backoff < 1:
            errors.append("failures_before_backoff must be >= 1")
        if monitor.stale_after_sec <= 0:
            errors.append("stale_after_sec must be > 0")

        return errors


# Global config manager instance
_config_manager: Optional[BotConfigManager] = None


def get_config_manager(config_path: Optional[str] = None) -> BotConfigManager:
    """Get global config manager"""
    global _config_manager
    if _config_manager is None:
        _config_manager = BotConfigManager(config_path)
    return _config_manager


def get_bot_config() -> BotConfig:
    """Get global volume bot config"""
    return get_config_manager().get_config()
