"""
Smart Profit Monitor

Watches the live price of one position and liquidates it when a risk rule
fires. Rules are evaluated every poll, first match wins:

    1. Emergency stop  (pnl <= -emergency_stop_loss_percent)  -> sell 100%, stop
    2. Stop loss       (pnl <= -stop_loss_percent)            -> sell 100%, stop
    3. Trailing stop   (armed at activation, fires at HWM - trail) -> sell 100%, stop
    4. Take profit     (pnl >= take_profit_percent)           -> sell part, keep watching

Take profit is edge-triggered: after it fires it re-arms only once PnL has
fallen back below the threshold. A liquidation that does not complete is not
consumed; the next poll evaluates again against what is left.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import TYPE_CHECKING, Any, Mapping, Optional, Protocol, Sequence

from volume_bot.config.bot_config import MonitorConfig
from volume_bot.core.event_bus import EventBus, EventType
from volume_bot.core.models import (
    Direction,
    MonitorPhase,
    MonitorState,
    RuleType,
    SmartProfitDefaults,
    SmartProfitExecution,
    SmartProfitSettings,
)
from volume_bot.core.registry import KeyedRegistry
from volume_bot.exceptions import (
    AlreadyMonitoringException,
    BotException,
    InvalidSettingsException,
    NoWalletsException,
    PriceUnavailableException,
    StorageException,
)

if TYPE_CHECKING:
    from volume_bot.core.price_feed import PriceSource
    from volume_bot.core.trader import TradeExecutor
    from volume_bot.core.wallet import WalletHandle, WalletPool

logger = logging.getLogger("volume_bot.smart_profit")

FULL_EXIT_RULES = (RuleType.EMERGENCY_STOP, RuleType.STOP_LOSS, RuleType.TRAILING_STOP)


class SettingsStore(Protocol):
    def load(self, owner_id: str, token_mint: str) -> Optional[SmartProfitSettings]:
        ...

    def save(self, settings: SmartProfitSettings) -> None:
        ...

    def log_execution(self, owner_id: str, token_mint: str, execution: SmartProfitExecution) -> None:
        ...


class SmartProfitMonitor:
    """Per-position price watcher that executes risk rules through a TradeExecutor."""

    def __init__(
        self,
        settings: SmartProfitSettings,
        wallets: Sequence[WalletHandle],
        executor: TradeExecutor,
        price_source: PriceSource,
        event_bus: EventBus | None = None,
        store: SettingsStore | None = None,
        config: MonitorConfig | None = None,
    ) -> None:
        self.settings = settings.copy()
        self.wallets = list(wallets)
        self.executor = executor
        self.price_source = price_source
        self.event_bus = event_bus or EventBus()
        self.store = store
        self.config = config or MonitorConfig()
        self.state = MonitorState(current_poll_interval_sec=self.config.poll_interval_sec)
        self.executions: list[SmartProfitExecution] = []
        self._task: asyncio.Task | None = None
        self._sell_lock = asyncio.Lock()

    @property
    def token_mint(self) -> str:
        return self.settings.token_mint

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start_monitoring(self, current_price_sol: float | None = None) -> MonitorState:
        if self.state.is_monitoring:
            raise AlreadyMonitoringException(
                "Monitor already running", owner_id=self.settings.owner_id, token_mint=self.token_mint
            )
        if not self.settings.enabled:
            raise InvalidSettingsException(
                "Smart profit is disabled", owner_id=self.settings.owner_id, token_mint=self.token_mint
            )
        if not self.wallets:
            raise NoWalletsException(
                "Position has no wallets", owner_id=self.settings.owner_id, token_mint=self.token_mint
            )

        state = MonitorState(phase=MonitorPhase.MONITORING, current_poll_interval_sec=self.config.poll_interval_sec)
        if current_price_sol:
            self._record_price(state, current_price_sol)
            pnl = self._pnl_percent(current_price_sol)
            state.unrealized_pnl_percent = pnl
            if (
                pnl is not None
                and self.settings.trailing_stop_enabled
                and pnl >= self.settings.trailing_stop_activation_percent
            ):
                state.trailing_high_water_mark_percent = pnl
        self.state = state

        self._task = asyncio.create_task(self._poll_loop(), name=f"smart-profit-{self.token_mint[:8]}")
        logger.info(
            "🚀 Smart profit monitoring %s | entry=%.10f tokens=%.2f TP=%s SL=%s TS=%s ES=%s",
            self.token_mint[:8],
            self.settings.average_entry_price,
            self.settings.total_tokens_held,
            self._fmt_rule(self.settings.take_profit_enabled, self.settings.take_profit_percent),
            self._fmt_rule(self.settings.stop_loss_enabled, self.settings.stop_loss_percent),
            self._fmt_rule(self.settings.trailing_stop_enabled, self.settings.trailing_stop_percent),
            self._fmt_rule(self.settings.emergency_stop_enabled, self.settings.emergency_stop_loss_percent),
        )
        self._publish(EventType.MONITOR_STARTED, average_entry_price=self.settings.average_entry_price)
        return replace(state)

    def stop_monitoring(self, reason: str = "manual") -> bool:
        """Stop future polls. A liquidation already selling runs to completion."""
        was_active = self.state.is_monitoring
        self._cancel_task()
        self.state.phase = MonitorPhase.IDLE
        if was_active:
            logger.info("Smart profit monitoring stopped %s | reason=%s", self.token_mint[:8], reason)
            self._publish(EventType.MONITOR_STOPPED, reason=reason)
        return was_active

    async def trigger_emergency_stop(self) -> SmartProfitExecution:
        """Liquidate everything now, regardless of PnL, then stop monitoring."""
        self._cancel_task()
        if self.state.is_monitoring:
            self.state.phase = MonitorPhase.LIQUIDATING

        price = self.state.current_price_sol
        try:
            quote = await self.price_source.get_price(self.token_mint)
            price = quote.price_sol
            self._record_price(self.state, price)
        except PriceUnavailableException as e:
            logger.warning("Emergency stop for %s without fresh price: %s", self.token_mint[:8], e)
        pnl = self._pnl_percent(price) if price else None

        logger.error("🚨 EMERGENCY STOP smart profit %s | pnl=%s", self.token_mint[:8], _fmt_pct(pnl))
        execution = await self._liquidate(RuleType.EMERGENCY_STOP, 100.0, price, pnl)
        if execution.success:
            self.state.last_triggered_rule = RuleType.EMERGENCY_STOP
        self.stop_monitoring(reason="emergency_stop")
        return execution

    # ------------------------------------------------------------------
    # Settings & reads
    # ------------------------------------------------------------------

    def update_settings(self, wallets: Sequence[WalletHandle] | None = None, **updates: Any) -> SmartProfitSettings:
        """Merge ``updates``; the poll loop picks them up on its next cycle."""
        for locked in ("owner_id", "token_mint"):
            if locked in updates and updates[locked] != getattr(self.settings, locked):
                raise InvalidSettingsException(f"{locked} cannot be changed", token_mint=self.token_mint)

        self.settings = self.settings.merged(**updates)
        if wallets is not None:
            self.wallets = list(wallets)
        self._persist()
        logger.info("Smart profit settings updated %s: %s", self.token_mint[:8], ", ".join(sorted(updates)))

        if not self.settings.enabled and self.state.is_monitoring:
            self.stop_monitoring(reason="disabled")
        return self.settings.copy()

    def get_state(self) -> MonitorState:
        return replace(self.state)

    def get_settings(self) -> SmartProfitSettings:
        return self.settings.copy()

    # ------------------------------------------------------------------
    # Poll loop
    # ------------------------------------------------------------------

    async def _poll_loop(self) -> None:
        while self.state.is_monitoring:
            await asyncio.sleep(self.state.current_poll_interval_sec)
            if not self.state.is_monitoring:
                break
            try:
                await self.evaluate()
            except Exception as e:
                logger.exception("Smart profit evaluation failed for %s", self.token_mint[:8])
                self._publish(EventType.ERROR, error=str(e))

    async def evaluate(self) -> Optional[SmartProfitExecution]:
        """Run one poll cycle. Returns the execution when a rule fired."""
        settings = self.settings
        state = self.state

        try:
            quote = await self.price_source.get_price(self.token_mint)
        except PriceUnavailableException as e:
            self._record_price_failure(str(e))
            return None
        if quote.is_stale(self.config.stale_after_sec):
            self._record_price_failure(f"stale quote ({quote.age():.0f}s old)")
            return None
        self._record_price_success()

        price = quote.price_sol
        self._record_price(state, price)
        state.last_evaluated_at = time.time()

        pnl = self._pnl_percent(price)
        if pnl is None:
            logger.debug("No entry price for %s, skipping evaluation", self.token_mint[:8])
            return None
        state.unrealized_pnl_percent = pnl

        if settings.total_tokens_held <= 0:
            return None

        rule = self._match_rule(settings, pnl)
        if rule is None:
            return None

        sell_percent = 100.0 if rule in FULL_EXIT_RULES else settings.take_profit_sell_percent
        logger.warning(
            "%s %s triggered | pnl=%.2f%% price=%.10f selling %.0f%%",
            _RULE_LABELS[rule], self.token_mint[:8], pnl, price, sell_percent,
        )
        # Cancelling the poll task must not abort sells that are already out
        liquidation = asyncio.ensure_future(self._execute_rule(rule, sell_percent, price, pnl))
        return await asyncio.shield(liquidation)

    async def _execute_rule(
        self,
        rule: RuleType,
        sell_percent: float,
        price: float,
        pnl: float,
    ) -> SmartProfitExecution:
        state = self.state
        if state.is_monitoring:
            state.phase = MonitorPhase.LIQUIDATING
        execution = await self._liquidate(rule, sell_percent, price, pnl)

        if execution.success:
            state.last_triggered_rule = rule
            if rule is RuleType.TAKE_PROFIT:
                state.take_profit_armed = False

        # Stopped or taken over by an emergency stop while selling
        if state.phase is MonitorPhase.LIQUIDATING and self._task is not None:
            state.phase = MonitorPhase.MONITORING
            if execution.success and (rule in FULL_EXIT_RULES or self.settings.total_tokens_held <= 0):
                self.stop_monitoring(reason=rule.value)
        return execution

    def _match_rule(self, settings: SmartProfitSettings, pnl: float) -> Optional[RuleType]:
        state = self.state

        if settings.emergency_stop_enabled and pnl <= -settings.emergency_stop_loss_percent:
            return RuleType.EMERGENCY_STOP

        if settings.stop_loss_enabled and pnl <= -settings.stop_loss_percent:
            return RuleType.STOP_LOSS

        if settings.trailing_stop_enabled:
            if not state.trailing_stop_armed and pnl >= settings.trailing_stop_activation_percent:
                state.trailing_stop_armed = True
                logger.info("Trailing stop armed %s at %.2f%%", self.token_mint[:8], pnl)
            if state.trailing_stop_armed:
                hwm = state.trailing_high_water_mark_percent
                state.trailing_high_water_mark_percent = pnl if hwm is None else max(hwm, pnl)
                if pnl <= state.trailing_high_water_mark_percent - settings.trailing_stop_percent:
                    return RuleType.TRAILING_STOP

        if settings.take_profit_enabled:
            if pnl >= settings.take_profit_percent:
                if state.take_profit_armed:
                    return RuleType.TAKE_PROFIT
            elif not state.take_profit_armed:
                state.take_profit_armed = True
                logger.debug("Take profit re-armed %s at %.2f%%", self.token_mint[:8], pnl)

        return None

    # ------------------------------------------------------------------
    # Liquidation
    # ------------------------------------------------------------------

    async def _liquidate(
        self,
        rule: RuleType,
        sell_percent: float,
        price: Optional[float],
        pnl: Optional[float],
    ) -> SmartProfitExecution:
        # One liquidation at a time; each sizes itself from what the previous one left
        if self._sell_lock.locked():
            logger.info("%s for %s waiting for the running liquidation", rule.value, self.token_mint[:8])
        async with self._sell_lock:
            return await self._sell_position(rule, sell_percent, price, pnl)

    async def _sell_position(
        self,
        rule: RuleType,
        sell_percent: float,
        price: Optional[float],
        pnl: Optional[float],
    ) -> SmartProfitExecution:
        settings = self.settings
        tokens = settings.total_tokens_held * sell_percent / 100.0
        execution = SmartProfitExecution(
            rule=rule,
            trigger_price=price,
            profit_percent=pnl,
            sell_percent=sell_percent,
            tokens_requested=tokens,
        )

        if tokens <= 0:
            execution.errors.append("no tokens held")
        else:
            per_wallet = tokens / len(self.wallets)
            size_sol = per_wallet * price if price else 0.0
            results = await asyncio.gather(
                *[
                    self.executor.execute(
                        wallet,
                        self.token_mint,
                        Direction.SELL,
                        size_sol,
                        settings.slippage_bps,
                        settings.platform,
                        token_amount=per_wallet,
                    )
                    for wallet in self.wallets
                ],
                return_exceptions=True,
            )
            for wallet, result in zip(self.wallets, results):
                if isinstance(result, Exception):
                    execution.errors.append(f"{wallet.wallet_id}: {result}")
                elif result.success:
                    execution.tokens_sold += result.amount_tokens or per_wallet
                    execution.sol_received += result.amount_sol
                    if result.signature:
                        execution.signatures.append(result.signature)
                else:
                    execution.errors.append(f"{wallet.wallet_id}: {result.error}")
            execution.success = not execution.errors and execution.tokens_sold > 0

        if execution.tokens_sold > 0:
            self._reduce_position(execution.tokens_sold)

        self.executions.append(execution)
        self.state.executions += 1
        self._log_execution(execution)

        if execution.success:
            logger.info(
                "💰 SELL %s %s | %.2f tokens -> %.4f SOL (%d tx)",
                rule.value, self.token_mint[:8], execution.tokens_sold, execution.sol_received,
                len(execution.signatures),
            )
            self._publish(
                EventType.RULE_TRIGGERED,
                rule=rule.value,
                profit_percent=pnl,
                tokens_sold=execution.tokens_sold,
                sol_received=execution.sol_received,
                signatures=list(execution.signatures),
            )
        else:
            logger.error(
                "%s liquidation incomplete for %s | sold %.2f/%.2f tokens: %s",
                rule.value, self.token_mint[:8], execution.tokens_sold, tokens, "; ".join(execution.errors),
            )
            self._publish(
                EventType.EXECUTION_FAILED,
                rule=rule.value,
                tokens_sold=execution.tokens_sold,
                errors=list(execution.errors),
            )
        return execution

    def _reduce_position(self, tokens_sold: float) -> None:
        # Cost basis of the remaining tokens is unchanged by a partial sale
        held = self.settings.total_tokens_held
        fraction = min(1.0, tokens_sold / held) if held > 0 else 1.0
        self.settings = self.settings.merged(
            total_tokens_held=max(0.0, held - tokens_sold),
            total_sol_invested=max(0.0, self.settings.total_sol_invested * (1 - fraction)),
            average_entry_price=self.settings.average_entry_price,
        )
        self._persist()

    # ------------------------------------------------------------------

    def _pnl_percent(self, price: float) -> Optional[float]:
        entry = self.settings.average_entry_price
        if entry <= 0:
            return None
        return (price - entry) / entry * 100

    @staticmethod
    def _record_price(state: MonitorState, price: float) -> None:
        state.current_price_sol = price
        if state.highest_price_sol is None or price > state.highest_price_sol:
            state.highest_price_sol = price
        if state.lowest_price_sol is None or price < state.lowest_price_sol:
            state.lowest_price_sol = price

    def _record_price_failure(self, error: str) -> None:
        state = self.state
        state.consecutive_price_failures += 1
        state.price_failures_total += 1
        logger.warning(
            "Price unavailable for %s (%d in a row): %s",
            self.token_mint[:8], state.consecutive_price_failures, error,
        )
        if (
            state.consecutive_price_failures >= self.config.failures_before_backoff
            and state.current_poll_interval_sec != self.config.backoff_interval_sec
        ):
            state.current_poll_interval_sec = self.config.backoff_interval_sec
            logger.warning(
                "Price feed degraded for %s, polling every %.1fs", self.token_mint[:8], self.config.backoff_interval_sec
            )

    def _record_price_success(self) -> None:
        state = self.state
        if state.consecutive_price_failures:
            logger.info("Price feed recovered for %s after %d failures", self.token_mint[:8], state.consecutive_price_failures)
        state.consecutive_price_failures = 0
        state.current_poll_interval_sec = self.config.poll_interval_sec

    def _cancel_task(self) -> None:
        task = self._task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._task = None

    def _persist(self) -> None:
        if self.store is None:
            return
        try:
            self.store.save(self.settings)
        except StorageException as e:
            logger.error("Failed to persist smart profit settings for %s: %s", self.token_mint[:8], e)

    def _log_execution(self, execution: SmartProfitExecution) -> None:
        if self.store is None:
            return
        try:
            self.store.log_execution(self.settings.owner_id, self.token_mint, execution)
        except StorageException as e:
            logger.error("Failed to record execution for %s: %s", self.token_mint[:8], e)

    def _publish(self, event_type: EventType, **data: Any) -> None:
        data.setdefault("owner_id", self.settings.owner_id)
        data.setdefault("phase", self.state.phase.value)
        self.event_bus.publish(event_type, self.token_mint, data)

    @staticmethod
    def _fmt_rule(enabled: bool, value: float) -> str:
        return f"{value:g}%" if enabled else "off"


_RULE_LABELS = {
    RuleType.EMERGENCY_STOP: "🚨 EMERGENCY STOP",
    RuleType.STOP_LOSS: "🛑 STOP LOSS",
    RuleType.TRAILING_STOP: "📉 TRAILING STOP",
    RuleType.TAKE_PROFIT: "💰 TAKE PROFIT",
}


def _fmt_pct(value: Optional[float]) -> str:
    return "n/a" if value is None else f"{value:.2f}%"


def _is_monitoring(monitor: SmartProfitMonitor) -> bool:
    return monitor.state.is_monitoring


class SmartProfitManager:
    """Monitors keyed by (owner_id, token_mint), backed by an optional settings store."""

    def __init__(
        self,
        executor: TradeExecutor,
        price_source: PriceSource,
        wallet_pool: WalletPool,
        store: SettingsStore | None = None,
        event_bus: EventBus | None = None,
        defaults: SmartProfitDefaults | None = None,
        config: MonitorConfig | None = None,
    ) -> None:
        self.executor = executor
        self.price_source = price_source
        self.wallet_pool = wallet_pool
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.defaults = defaults or SmartProfitDefaults()
        self.config = config or MonitorConfig()
        self._monitors: KeyedRegistry[SmartProfitMonitor] = KeyedRegistry()

    def _load_settings(self, owner_id: str, token_mint: str) -> SmartProfitSettings:
        settings = self.store.load(owner_id, token_mint) if self.store else None
        if settings is None:
            settings = SmartProfitSettings.create(owner_id, token_mint, self.defaults)
        return settings

    def _resolve_wallets(self, settings: SmartProfitSettings) -> list[WalletHandle]:
        if settings.wallet_ids:
            return self.wallet_pool.resolve(settings.wallet_ids)
        return self.wallet_pool.resolve(settings.wallet_addresses)

    async def start(
        self,
        owner_id: str,
        token_mint: str,
        overrides: Mapping[str, Any] | None = None,
        current_price_sol: float | None = None,
    ) -> MonitorState:
        key = (owner_id, token_mint)
        existing = self._monitors.get(key)
        if existing is not None and existing.state.is_monitoring:
            raise AlreadyMonitoringException("Monitor already running", owner_id=owner_id, token_mint=token_mint)

        settings = self._load_settings(owner_id, token_mint)
        if overrides:
            settings = settings.merged(**overrides)
        wallets = self._resolve_wallets(settings)
        if self.store is not None:
            self.store.save(settings)

        monitor = SmartProfitMonitor(
            settings,
            wallets,
            self.executor,
            self.price_source,
            event_bus=self.event_bus,
            store=self.store,
            config=self.config,
        )
        previous = self._monitors.claim(key, monitor, is_live=_is_monitoring, exc=AlreadyMonitoringException)
        try:
            return await monitor.start_monitoring(current_price_sol)
        except BotException:
            if previous is not None:
                self._monitors.put(key, previous)
            else:
                self._monitors.pop(key)
            raise

    def stop(self, owner_id: str, token_mint: str) -> bool:
        monitor = self._monitors.get((owner_id, token_mint))
        return monitor.stop_monitoring() if monitor else False

    async def emergency_stop(self, owner_id: str, token_mint: str) -> Optional[SmartProfitExecution]:
        monitor = self._monitors.get((owner_id, token_mint))
        if monitor is None:
            return None
        return await monitor.trigger_emergency_stop()

    def update_settings(self, owner_id: str, token_mint: str, **updates: Any) -> SmartProfitSettings:
        monitor = self._monitors.get((owner_id, token_mint))
        wallets = None
        if monitor is not None:
            if "wallet_ids" in updates or "wallet_addresses" in updates:
                wallets = self._resolve_wallets(monitor.settings.merged(**updates))
            return monitor.update_settings(wallets=wallets, **updates)

        settings = self._load_settings(owner_id, token_mint).merged(**updates)
        if self.store is not None:
            self.store.save(settings)
        return settings.copy()

    def get_state(self, owner_id: str, token_mint: str) -> Optional[MonitorState]:
        monitor = self._monitors.get((owner_id, token_mint))
        return monitor.get_state() if monitor else None

    def get_monitor(self, owner_id: str, token_mint: str) -> Optional[SmartProfitMonitor]:
        return self._monitors.get((owner_id, token_mint))

    def list_active(self, owner_id: str) -> dict[str, MonitorState]:
        return {
            m.token_mint: m.get_state()
            for m in self._monitors.values_for_owner(owner_id)
            if m.state.is_monitoring
        }

    def shutdown(self) -> int:
        stopped = 0
        for _, monitor in self._monitors.items():
            if monitor.stop_monitoring(reason="shutdown"):
                stopped += 1
        return stopped
