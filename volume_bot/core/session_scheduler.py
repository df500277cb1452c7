"""
Volume Session Scheduler

Paces buy/sell activity for one token across a pool of wallets until a
target traded SOL volume is reached.

Each session owns one timer task. Every ``trade_interval_ms`` it:
1. Picks the next idle, non-suspended wallet (round robin)
2. Draws the direction against the strategy's buy pressure
3. Sizes the trade inside [min_tx_sol, max_tx_sol], capped at what is left
4. Runs the trade as a child task so a slow venue never delays the timer

Stopping is synchronous: ``stop``/``emergency_stop`` cancel the timer and
set the final status before returning. In-flight trades finish on their own
and their results are discarded once the session is terminal.
"""
from __future__ import annotations

import asyncio
import logging
import random
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any, Mapping, Optional, Sequence

from volume_bot.core.event_bus import EventBus, EventType
from volume_bot.core.models import (
    Direction,
    Platform,
    Session,
    SessionInfo,
    SessionSettings,
    SessionStatus,
    Strategy,
    TradeResult,
)
from volume_bot.core.registry import KeyedRegistry
from volume_bot.exceptions import (
    AlreadyRunningException,
    InvalidSettingsException,
    NoWalletsException,
)

if TYPE_CHECKING:
    from volume_bot.core.trader import TradeExecutor
    from volume_bot.core.wallet import WalletHandle

logger = logging.getLogger("volume_bot.session")

# PLD counter-buys below this pressure are raised to it
PLD_MIN_BUY_PRESSURE = 55.0
CMWA_BUY_PRESSURE = 50.0


@dataclass
class _SessionRuntime:
    session: Session
    task: Optional[asyncio.Task] = None
    busy: set = field(default_factory=set)
    suspended: set = field(default_factory=set)
    failure_streaks: dict = field(default_factory=dict)
    in_flight_sol: float = 0.0
    trade_tasks: set = field(default_factory=set)
    next_wallet: int = 0
    finished: asyncio.Event = field(default_factory=asyncio.Event)


def effective_buy_pressure(settings: SessionSettings) -> float:
    if settings.strategy is Strategy.PLD:
        return max(settings.buy_pressure_percent, PLD_MIN_BUY_PRESSURE)
    if settings.strategy is Strategy.CMWA:
        return CMWA_BUY_PRESSURE
    return settings.buy_pressure_percent


class SessionScheduler:
    """Owns every volume session of the process, keyed by (owner_id, token_mint)."""

    def __init__(
        self,
        executor: TradeExecutor,
        event_bus: EventBus | None = None,
        defaults: SessionSettings | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.executor = executor
        self.event_bus = event_bus or EventBus()
        self.defaults = defaults or SessionSettings()
        self.rng = rng or random.Random()
        self._sessions: KeyedRegistry[_SessionRuntime] = KeyedRegistry()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        owner_id: str,
        token_mint: str,
        wallets: Sequence[WalletHandle],
        settings: Mapping[str, Any] | None = None,
        platform: str | Platform = Platform.JUPITER,
        current_price_sol: float | None = None,
    ) -> SessionInfo:
        key = (owner_id, token_mint)
        existing = self._sessions.get(key)
        if existing is not None and not existing.session.status.is_terminal:
            raise AlreadyRunningException("Session already active", owner_id=owner_id, token_mint=token_mint)
        if not wallets:
            raise NoWalletsException("At least one wallet is required", owner_id=owner_id, token_mint=token_mint)

        effective = self.defaults.merged(settings)
        try:
            venue = Platform(platform)
        except ValueError:
            raise InvalidSettingsException("Unknown platform", platform=platform) from None

        unique_wallets = tuple({w.wallet_id: w for w in wallets}.values())
        session = Session(
            owner_id=owner_id,
            token_mint=token_mint,
            platform=venue,
            settings=effective,
            wallets=unique_wallets,
        )
        if current_price_sol:
            session.start_price = current_price_sol
            session.record_price(current_price_sol)

        runtime = _SessionRuntime(session=session)
        self._sessions.claim(key, runtime, is_live=_is_live, exc=AlreadyRunningException)

        session.transition_to(SessionStatus.RUNNING)
        session.started_at = time.time()
        runtime.task = asyncio.create_task(self._run(runtime), name=f"volume-session-{session.id[:8]}")

        logger.info(
            "🚀 SESSION started %s %s | %s target=%.3f SOL wallets=%d interval=%dms",
            owner_id, token_mint[:8], effective.strategy.value, effective.target_volume_sol,
            len(unique_wallets), effective.trade_interval_ms,
        )
        self._publish(EventType.SESSION_STARTED, session, settings=effective.to_dict())
        return SessionInfo(session=session.snapshot(), settings=replace(effective))

    def stop(self, owner_id: str, token_mint: str, reason: str = "manual") -> bool:
        runtime = self._sessions.get((owner_id, token_mint))
        if runtime is None or runtime.session.status.is_terminal:
            return False

        session = runtime.session
        # A session already winding down after reaching its target stays "completed"
        if session.status is not SessionStatus.STOPPING:
            session.stop_reason = reason
        self._cancel_timer(runtime)
        session.transition_to(SessionStatus.STOPPED)
        session.stopped_at = time.time()
        runtime.finished.set()

        logger.info(
            "🛑 SESSION stopped %s %s | reason=%s volume=%.4f/%.4f trades=%d in_flight=%d",
            owner_id, token_mint[:8], session.stop_reason, session.executed_volume_sol, session.target_volume_sol,
            session.total_trades, len(runtime.busy),
        )
        self._publish(EventType.SESSION_STOPPED, session, reason=session.stop_reason)
        return True

    def emergency_stop(
        self,
        owner_id: str,
        token_mint: str,
        reason: str = "emergency",
        timestamp: float | None = None,
    ) -> bool:
        runtime = self._sessions.get((owner_id, token_mint))
        if runtime is None:
            return False

        session = runtime.session
        self._cancel_timer(runtime)
        session.transition_to(SessionStatus.EMERGENCY_STOPPED)
        session.stop_reason = reason
        session.stopped_at = timestamp if timestamp is not None else time.time()
        runtime.finished.set()

        logger.error(
            "🚨 EMERGENCY STOP %s %s | reason=%s pnl=%.4f SOL in_flight=%d",
            owner_id, token_mint[:8], reason, session.net_pnl_sol, len(runtime.busy),
        )
        self._publish(EventType.EMERGENCY_STOP, session, reason=reason, timestamp=session.stopped_at)
        return True

    async def shutdown(self, reason: str = "shutdown") -> int:
        """Stop every live session and wait for outstanding trade tasks."""
        stopped = 0
        pending = []
        for (owner_id, token_mint), runtime in self._sessions.items():
            if self.stop(owner_id, token_mint, reason=reason):
                stopped += 1
            if runtime.task is not None:
                pending.append(runtime.task)
            pending.extend(runtime.trade_tasks)
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)
        return stopped

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_status(self, owner_id: str, token_mint: str) -> Session | None:
        runtime = self._sessions.get((owner_id, token_mint))
        return runtime.session.snapshot() if runtime else None

    def get_session_info(self, owner_id: str, token_mint: str) -> SessionInfo | None:
        runtime = self._sessions.get((owner_id, token_mint))
        if runtime is None:
            return None
        session = runtime.session.snapshot()
        return SessionInfo(session=session, settings=session.settings)

    def list_active(self, owner_id: str) -> list[Session]:
        return [
            rt.session.snapshot()
            for rt in self._sessions.values_for_owner(owner_id)
            if not rt.session.status.is_terminal
        ]

    def suspended_wallets(self, owner_id: str, token_mint: str) -> list[str]:
        runtime = self._sessions.get((owner_id, token_mint))
        return sorted(runtime.suspended) if runtime else []

    def resume_wallet(self, owner_id: str, token_mint: str, wallet_id: str) -> bool:
        runtime = self._sessions.get((owner_id, token_mint))
        if runtime is None or wallet_id not in runtime.suspended:
            return False
        runtime.suspended.discard(wallet_id)
        runtime.failure_streaks[wallet_id] = 0
        logger.info("Wallet %s resumed for %s", wallet_id, token_mint[:8])
        return True

    async def wait(self, owner_id: str, token_mint: str, timeout: float | None = None) -> Session | None:
        """Wait until the session is terminal. Raises asyncio.TimeoutError on timeout."""
        runtime = self._sessions.get((owner_id, token_mint))
        if runtime is None:
            return None
        await asyncio.wait_for(runtime.finished.wait(), timeout)
        return runtime.session.snapshot()

    def prune(self, max_age_sec: float) -> int:
        """Drop terminal sessions that stopped more than ``max_age_sec`` ago."""
        cutoff = time.time() - max_age_sec
        removed = 0
        for key, runtime in self._sessions.items():
            session = runtime.session
            if session.status.is_terminal and (session.stopped_at or 0) <= cutoff:
                self._sessions.pop(key)
                removed += 1
        if removed:
            logger.debug("Pruned %d finished sessions", removed)
        return removed

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    async def _run(self, runtime: _SessionRuntime) -> None:
        session = runtime.session
        interval = session.settings.trade_interval_ms / 1000.0
        try:
            while session.status is SessionStatus.RUNNING:
                await asyncio.sleep(interval)
                if session.status is not SessionStatus.RUNNING:
                    break
                self._tick(runtime)
        except Exception as e:
            session.error_message = str(e)
            logger.exception("Session %s %s timer crashed", session.owner_id, session.token_mint[:8])
            self._publish(EventType.ERROR, session, error=str(e))

    def _tick(self, runtime: _SessionRuntime) -> None:
        session = runtime.session
        settings = session.settings

        remaining = settings.target_volume_sol - session.executed_volume_sol - runtime.in_flight_sol
        if remaining <= 0:
            logger.debug("Tick skipped for %s: target covered by in-flight trades", session.token_mint[:8])
            return

        wallet = self._next_wallet(runtime)
        if wallet is None:
            logger.debug("Tick skipped for %s: no idle wallet", session.token_mint[:8])
            return

        roll = self.rng.random() * 100
        direction = Direction.BUY if roll < effective_buy_pressure(settings) else Direction.SELL
        size_sol = self._size_trade(settings, remaining)

        # Mark busy before yielding to the loop
        runtime.busy.add(wallet.wallet_id)
        runtime.in_flight_sol += size_sol
        task = asyncio.create_task(self._trade(runtime, wallet, direction, size_sol))
        runtime.trade_tasks.add(task)
        task.add_done_callback(runtime.trade_tasks.discard)

    def _next_wallet(self, runtime: _SessionRuntime) -> WalletHandle | None:
        wallets = runtime.session.wallets
        count = len(wallets)
        for offset in range(count):
            index = (runtime.next_wallet + offset) % count
            wallet = wallets[index]
            if wallet.wallet_id in runtime.busy or wallet.wallet_id in runtime.suspended:
                continue
            runtime.next_wallet = (index + 1) % count
            return wallet
        return None

    def _size_trade(self, settings: SessionSettings, remaining: float) -> float:
        if settings.randomize_amounts:
            size = self.rng.uniform(settings.min_tx_sol, settings.max_tx_sol)
        else:
            size = settings.max_tx_sol
        return max(settings.min_tx_sol, min(size, remaining))

    # ------------------------------------------------------------------
    # Trades
    # ------------------------------------------------------------------

    async def _trade(
        self,
        runtime: _SessionRuntime,
        wallet: WalletHandle,
        direction: Direction,
        size_sol: float,
    ) -> None:
        session = runtime.session
        try:
            result = await self.executor.execute(
                wallet,
                session.token_mint,
                direction,
                size_sol,
                session.settings.slippage_bps,
                session.platform,
            )
        except Exception as e:
            logger.warning("%s %s raised for %s: %s", direction.value.upper(), session.token_mint[:8], wallet.short, e)
            result = TradeResult(success=False, error=str(e))
        finally:
            runtime.busy.discard(wallet.wallet_id)
            runtime.in_flight_sol = max(0.0, runtime.in_flight_sol - size_sol)

        self._apply_result(runtime, wallet, direction, size_sol, result)

    def _apply_result(
        self,
        runtime: _SessionRuntime,
        wallet: WalletHandle,
        direction: Direction,
        size_sol: float,
        result: TradeResult,
    ) -> None:
        session = runtime.session
        if session.status.is_terminal:
            logger.info(
                "Discarding late %s result for %s (%s, session %s)",
                direction.value, session.token_mint[:8], wallet.short, session.status.value,
            )
            return

        session.total_trades += 1
        if result.success:
            self._record_fill(runtime, wallet, direction, size_sol, result)
            if self._check_guards(runtime):
                return
        else:
            self._record_failure(runtime, wallet, direction, result)

        self._check_completion(runtime)

    def _record_fill(
        self,
        runtime: _SessionRuntime,
        wallet: WalletHandle,
        direction: Direction,
        size_sol: float,
        result: TradeResult,
    ) -> None:
        session = runtime.session
        amount_sol = result.amount_sol or size_sol

        session.successful_trades += 1
        session.executed_volume_sol += amount_sol
        if direction is Direction.BUY:
            session.buy_count += 1
            session.total_sol_spent += amount_sol
            session.tokens_bought += result.amount_tokens
        else:
            session.sell_count += 1
            session.total_sol_received += amount_sol
            session.tokens_sold += result.amount_tokens

        price = result.price
        if price:
            if session.start_price is None:
                session.start_price = price
            session.record_price(price)
        session.refresh_pnl()
        runtime.failure_streaks[wallet.wallet_id] = 0

        emoji = "🟢" if direction is Direction.BUY else "🔴"
        logger.info(
            "%s %s %.4f SOL %s via %s | volume %.4f/%.4f (%.0f%%) pnl=%.4f",
            emoji, direction.value.upper(), amount_sol, session.token_mint[:8], wallet.short,
            session.executed_volume_sol, session.target_volume_sol, session.progress_percent, session.net_pnl_sol,
        )
        self._publish(
            EventType.TRADE_EXECUTED,
            session,
            wallet_id=wallet.wallet_id,
            direction=direction.value,
            amount_sol=amount_sol,
            amount_tokens=result.amount_tokens,
            signature=result.signature,
        )
        self._publish(
            EventType.STATUS_UPDATE,
            session,
            executed_volume_sol=session.executed_volume_sol,
            progress_percent=session.progress_percent,
            net_pnl_sol=session.net_pnl_sol,
        )

    def _record_failure(
        self,
        runtime: _SessionRuntime,
        wallet: WalletHandle,
        direction: Direction,
        result: TradeResult,
    ) -> None:
        session = runtime.session
        session.failed_trades += 1

        streak = runtime.failure_streaks.get(wallet.wallet_id, 0) + 1
        runtime.failure_streaks[wallet.wallet_id] = streak
        logger.warning(
            "%s failed for %s via %s (%d in a row): %s",
            direction.value.upper(), session.token_mint[:8], wallet.short, streak, result.error,
        )
        if streak >= session.settings.max_consecutive_wallet_failures and wallet.wallet_id not in runtime.suspended:
            runtime.suspended.add(wallet.wallet_id)
            logger.warning("Wallet %s suspended for %s after %d failures", wallet.wallet_id, session.token_mint[:8], streak)

        self._publish(
            EventType.TRADE_FAILED,
            session,
            wallet_id=wallet.wallet_id,
            direction=direction.value,
            error=result.error,
            suspended=wallet.wallet_id in runtime.suspended,
        )

    def _check_guards(self, runtime: _SessionRuntime) -> bool:
        session = runtime.session
        settings = session.settings
        if not settings.emergency_stop_enabled:
            return False

        reason = None
        if session.net_pnl_sol < -settings.max_session_loss_sol:
            reason = f"max session loss exceeded ({session.net_pnl_sol:.4f} SOL)"
        elif session.start_price and session.current_price:
            drop = (session.start_price - session.current_price) / session.start_price * 100
            if drop > settings.max_price_drop_percent:
                reason = f"price dropped {drop:.1f}% from start"

        if reason is None:
            return False
        return self.emergency_stop(session.owner_id, session.token_mint, reason=reason)

    def _check_completion(self, runtime: _SessionRuntime) -> None:
        session = runtime.session
        if session.status is SessionStatus.RUNNING and session.executed_volume_sol >= session.target_volume_sol:
            session.transition_to(SessionStatus.STOPPING)
            session.stop_reason = "completed"
            self._cancel_timer(runtime)
            logger.info(
                "SESSION target reached %s %s | %.4f SOL in %d trades",
                session.owner_id, session.token_mint[:8], session.executed_volume_sol, session.total_trades,
            )

        if session.status is SessionStatus.STOPPING and not runtime.busy:
            session.transition_to(SessionStatus.STOPPED)
            session.stopped_at = time.time()
            runtime.finished.set()
            self._publish(EventType.SESSION_STOPPED, session, reason=session.stop_reason)

    # ------------------------------------------------------------------

    def _cancel_timer(self, runtime: _SessionRuntime) -> None:
        task = runtime.task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    def _publish(self, event_type: EventType, session: Session, **data: Any) -> None:
        data.setdefault("session_id", session.id)
        data.setdefault("owner_id", session.owner_id)
        data.setdefault("status", session.status.value)
        self.event_bus.publish(event_type, session.token_mint, data)


def _is_live(runtime: _SessionRuntime) -> bool:
    return not runtime.session.status.is_terminal
