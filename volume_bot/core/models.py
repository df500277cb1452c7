from __future__ import annotations

import time
import uuid
from dataclasses import asdict, dataclass, field, fields, replace
from enum import Enum
from typing import Any, Mapping

from volume_bot.exceptions import InvalidSettingsException, InvalidTransitionException


class Strategy(str, Enum):
    DBPM = "DBPM"   # dynamic buy-pressure maintenance
    PLD = "PLD"     # predictive liquidity-depth counter-buy
    CMWA = "CMWA"   # concurrent multi-wallet arbitrage


class Platform(str, Enum):
    PUMPFUN = "pumpfun"
    JUPITER = "jupiter"
    RAYDIUM = "raydium"


class Direction(str, Enum):
    BUY = "buy"
    SELL = "sell"


class SessionStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    STOPPING = "stopping"
    STOPPED = "stopped"
    EMERGENCY_STOPPED = "emergency_stopped"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.STOPPED, SessionStatus.EMERGENCY_STOPPED)


# Every status may also move to EMERGENCY_STOPPED (checked separately).
_VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.PENDING: {SessionStatus.RUNNING, SessionStatus.STOPPED},
    SessionStatus.RUNNING: {SessionStatus.STOPPING, SessionStatus.STOPPED},
    SessionStatus.STOPPING: {SessionStatus.STOPPED},
    SessionStatus.STOPPED: set(),
    SessionStatus.EMERGENCY_STOPPED: set(),
}


class MonitorPhase(str, Enum):
    IDLE = "idle"
    MONITORING = "monitoring"
    LIQUIDATING = "liquidating"


class RuleType(str, Enum):
    TAKE_PROFIT = "take_profit"
    STOP_LOSS = "stop_loss"
    TRAILING_STOP = "trailing_stop"
    EMERGENCY_STOP = "emergency_stop"


def _coerce_enum(name: str, value: Any, enum_cls: type[Enum]) -> Any:
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = ", ".join(e.value for e in enum_cls)
        raise InvalidSettingsException(f"{name} must be one of: {allowed}", value=value) from None


def _merge_dataclass(obj, updates: Mapping[str, Any]):
    known = {f.name for f in fields(obj)}
    unknown = sorted(set(updates) - known)
    if unknown:
        raise InvalidSettingsException("Unknown settings fields", fields=",".join(unknown))
    return replace(obj, **dict(updates))


# ============================================
# SESSION
# ============================================

@dataclass
class SessionSettings:
    """Pacing settings for one volume session (defaults match the stored defaults)."""
    strategy: Strategy = Strategy.DBPM
    target_volume_sol: float = 1.0
    min_tx_sol: float = 0.01
    max_tx_sol: float = 0.1
    trade_interval_ms: int = 5000
    buy_pressure_percent: float = 70.0
    slippage_bps: int = 500
    randomize_amounts: bool = True
    # Session guards
    emergency_stop_enabled: bool = True
    max_session_loss_sol: float = 0.5
    max_price_drop_percent: float = 20.0
    max_consecutive_wallet_failures: int = 3

    def __post_init__(self) -> None:
        self.strategy = _coerce_enum("strategy", self.strategy, Strategy)

    def validate(self) -> list[str]:
        errors = []
        if not 0 <= self.buy_pressure_percent <= 100:
            errors.append("buy_pressure_percent must be between 0 and 100")
        if self.target_volume_sol <= 0:
            errors.append("target_volume_sol must be > 0")
        if self.trade_interval_ms <= 0:
            errors.append("trade_interval_ms must be > 0")
        if self.min_tx_sol <= 0:
            errors.append("min_tx_sol must be > 0")
        if self.max_tx_sol < self.min_tx_sol:
            errors.append("max_tx_sol must be >= min_tx_sol")
        if self.slippage_bps < 0:
            errors.append("slippage_bps must be >= 0")
        if self.max_session_loss_sol < 0:
            errors.append("max_session_loss_sol must be >= 0")
        if self.max_price_drop_percent < 0:
            errors.append("max_price_drop_percent must be >= 0")
        if self.max_consecutive_wallet_failures < 1:
            errors.append("max_consecutive_wallet_failures must be >= 1")
        return errors

    def merged(self, overrides: Mapping[str, Any] | None) -> "SessionSettings":
        """Return validated settings with ``overrides`` applied on top."""
        merged = _merge_dataclass(self, overrides or {})
        errors = merged.validate()
        if errors:
            raise InvalidSettingsException("; ".join(errors))
        return merged

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["strategy"] = self.strategy.value
        return data


@dataclass
class Session:
    owner_id: str
    token_mint: str
    platform: Platform
    settings: SessionSettings
    wallets: tuple = ()
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: SessionStatus = SessionStatus.PENDING

    # Progress
    executed_volume_sol: float = 0.0
    total_trades: int = 0
    successful_trades: int = 0
    failed_trades: int = 0
    buy_count: int = 0
    sell_count: int = 0
    net_pnl_sol: float = 0.0

    # Accounting
    total_sol_spent: float = 0.0
    total_sol_received: float = 0.0
    tokens_bought: float = 0.0
    tokens_sold: float = 0.0

    # Price tracking
    start_price: float | None = None
    current_price: float | None = None
    peak_price: float | None = None
    lowest_price: float | None = None

    stop_reason: str | None = None
    error_message: str | None = None
    created_at: float = field(default_factory=time.time)
    started_at: float | None = None
    stopped_at: float | None = None

    @property
    def target_volume_sol(self) -> float:
        return self.settings.target_volume_sol

    @property
    def key(self) -> tuple[str, str]:
        return (self.owner_id, self.token_mint)

    @property
    def progress_percent(self) -> float:
        return self.executed_volume_sol / self.target_volume_sol * 100

    def transition_to(self, new_status: SessionStatus) -> None:
        if new_status is SessionStatus.EMERGENCY_STOPPED:
            self.status = new_status
            return
        if new_status not in _VALID_TRANSITIONS[self.status]:
            raise InvalidTransitionException(
                "Session status change not allowed",
                session_id=self.id,
                from_status=self.status.value,
                to_status=new_status.value,
            )
        self.status = new_status

    def record_price(self, price: float) -> None:
        self.current_price = price
        if self.peak_price is None or price > self.peak_price:
            self.peak_price = price
        if self.lowest_price is None or price < self.lowest_price:
            self.lowest_price = price

    def refresh_pnl(self) -> None:
        inventory = self.tokens_bought - self.tokens_sold
        mark = inventory * self.current_price if self.current_price else 0.0
        self.net_pnl_sol = self.total_sol_received - self.total_sol_spent + mark

    def snapshot(self) -> "Session":
        return replace(self, settings=replace(self.settings))


@dataclass
class SessionInfo:
    session: Session
    settings: SessionSettings


# ============================================
# TRADES & PRICES
# ============================================

@dataclass
class TradeResult:
    success: bool
    amount_sol: float = 0.0
    amount_tokens: float = 0.0
    signature: str = ""
    error: str | None = None

    @property
    def price(self) -> float | None:
        if self.amount_tokens > 0 and self.amount_sol > 0:
            return self.amount_sol / self.amount_tokens
        return None


@dataclass
class PriceQuote:
    token_mint: str
    price_sol: float
    as_of: float
    source: str = ""

    def age(self, now: float | None = None) -> float:
        return (now if now is not None else time.time()) - self.as_of

    def is_stale(self, max_age_sec: float, now: float | None = None) -> bool:
        return self.age(now) > max_age_sec


# ============================================
# SMART PROFIT
# ============================================

@dataclass
class SmartProfitDefaults:
    """Rule toggles and thresholds applied to new positions."""
    take_profit_enabled: bool = True
    take_profit_percent: float = 50.0
    take_profit_sell_percent: float = 50.0
    stop_loss_enabled: bool = True
    stop_loss_percent: float = 20.0
    trailing_stop_enabled: bool = False
    trailing_stop_percent: float = 10.0
    trailing_stop_activation_percent: float = 20.0
    emergency_stop_enabled: bool = True
    emergency_stop_loss_percent: float = 50.0
    slippage_bps: int = 500
    platform: Platform = Platform.JUPITER

    def __post_init__(self) -> None:
        self.platform = _coerce_enum("platform", self.platform, Platform)

    def validate(self) -> list[str]:
        errors = []
        for name in (
            "take_profit_percent",
            "stop_loss_percent",
            "trailing_stop_percent",
            "trailing_stop_activation_percent",
            "emergency_stop_loss_percent",
        ):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0")
        if not 0 < self.take_profit_sell_percent <= 100:
            errors.append("take_profit_sell_percent must be in (0, 100]")
        if self.slippage_bps < 0:
            errors.append("slippage_bps must be >= 0")
        return errors

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["platform"] = self.platform.value
        return data


@dataclass
class SmartProfitSettings(SmartProfitDefaults):
    owner_id: str = ""
    token_mint: str = ""
    enabled: bool = True
    wallet_ids: list[str] = field(default_factory=list)
    wallet_addresses: list[str] = field(default_factory=list)
    average_entry_price: float = 0.0
    total_tokens_held: float = 0.0
    total_sol_invested: float = 0.0

    def __post_init__(self) -> None:
        super().__post_init__()
        if self.average_entry_price <= 0 and self.total_tokens_held > 0 and self.total_sol_invested > 0:
            self.average_entry_price = self.total_sol_invested / self.total_tokens_held

    @classmethod
    def create(
        cls,
        owner_id: str,
        token_mint: str,
        defaults: SmartProfitDefaults | None = None,
        **overrides: Any,
    ) -> "SmartProfitSettings":
        base = asdict(defaults) if defaults else {}
        settings = cls(owner_id=owner_id, token_mint=token_mint, **base)
        return settings.merged(**overrides)

    def validate(self) -> list[str]:
        errors = super().validate()
        for name in ("average_entry_price", "total_tokens_held", "total_sol_invested"):
            if getattr(self, name) < 0:
                errors.append(f"{name} must be >= 0")
        return errors

    def merged(self, **updates: Any) -> "SmartProfitSettings":
        """Return a copy where only the provided fields change.

        A new position size or cost re-derives the entry price unless one is
        given explicitly.
        """
        merged = _merge_dataclass(self, updates)
        if (
            ("total_tokens_held" in updates or "total_sol_invested" in updates)
            and "average_entry_price" not in updates
            and merged.total_tokens_held > 0
            and merged.total_sol_invested > 0
        ):
            merged.average_entry_price = merged.total_sol_invested / merged.total_tokens_held
        errors = merged.validate()
        if errors:
            raise InvalidSettingsException("; ".join(errors), owner_id=self.owner_id, token_mint=self.token_mint)
        return merged

    def copy(self) -> "SmartProfitSettings":
        return replace(self, wallet_ids=list(self.wallet_ids), wallet_addresses=list(self.wallet_addresses))


@dataclass
class MonitorState:
    phase: MonitorPhase = MonitorPhase.IDLE
    current_price_sol: float | None = None
    highest_price_sol: float | None = None
    lowest_price_sol: float | None = None
    unrealized_pnl_percent: float | None = None
    trailing_stop_armed: bool = False
    trailing_high_water_mark_percent: float | None = None
    take_profit_armed: bool = True
    last_evaluated_at: float | None = None
    last_triggered_rule: RuleType | None = None
    consecutive_price_failures: int = 0
    price_failures_total: int = 0
    current_poll_interval_sec: float = 0.0
    executions: int = 0

    @property
    def is_monitoring(self) -> bool:
        return self.phase is not MonitorPhase.IDLE


@dataclass
class SmartProfitExecution:
    rule: RuleType
    trigger_price: float | None
    profit_percent: float | None
    sell_percent: float
    tokens_requested: float
    tokens_sold: float = 0.0
    sol_received: float = 0.0
    signatures: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    success: bool = False
    timestamp: float = field(default_factory=time.time)
