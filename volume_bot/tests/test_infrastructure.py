"""
Tests for registry, event bus, persistence, retry and logging helpers
"""

import logging
from dataclasses import replace

import httpx
import pytest

from conftest import MINT, OWNER
from volume_bot.config import Settings
from volume_bot.core.event_bus import ALL_TOKENS, EventBus, EventType
from volume_bot.core.models import (
    Platform,
    RuleType,
    Session,
    SessionSettings,
    SessionStatus,
    SmartProfitExecution,
    SmartProfitSettings,
)
from volume_bot.core.registry import KeyedRegistry
from volume_bot.db.database import DatabaseManager
from volume_bot.exceptions import AlreadyRunningException, StateException
from volume_bot.utils.logging import ColoredFormatter, setup_logging
from volume_bot.utils.retry import CircuitBreaker, async_retry


class TestKeyedRegistry:

    def test_claim_rejects_live_entry(self):
        registry = KeyedRegistry()
        registry.claim((OWNER, MINT), "a", is_live=lambda v: True)
        with pytest.raises(AlreadyRunningException):
            registry.claim((OWNER, MINT), "b", is_live=lambda v: True, exc=AlreadyRunningException)
        assert registry.get((OWNER, MINT)) == "a"

    def test_claim_replaces_finished_entry(self):
        registry = KeyedRegistry()
        registry.put((OWNER, MINT), "old")
        replaced = registry.claim((OWNER, MINT), "new", is_live=lambda v: False)
        assert replaced == "old"
        assert registry.get((OWNER, MINT)) == "new"

    def test_default_exception(self):
        registry = KeyedRegistry()
        registry.put((OWNER, MINT), 1)
        with pytest.raises(StateException):
            registry.claim((OWNER, MINT), 2, is_live=bool)

    def test_owner_scoping(self):
        registry = KeyedRegistry()
        registry.put(("alice", "m1"), 1)
        registry.put(("alice", "m2"), 2)
        registry.put(("bob", "m1"), 3)
        assert sorted(registry.values_for_owner("alice")) == [1, 2]
        assert ("bob", "m1") in registry
        assert registry.pop(("bob", "m1")) == 3
        assert registry.pop(("bob", "m1")) is None
        assert len(registry) == 2

    def test_iteration_is_a_copy(self):
        registry = KeyedRegistry()
        registry.put(("a", "m"), 1)
        registry.put(("b", "m"), 2)
        for key in registry:
            registry.pop(key)
        assert len(registry) == 0


class TestEventBus:

    def test_token_and_wildcard_subscribers(self):
        bus = EventBus()
        token_events, all_events = [], []
        bus.subscribe(MINT, token_events.append)
        bus.subscribe(ALL_TOKENS, all_events.append)

        bus.publish(EventType.SESSION_STARTED, MINT, {"id": "s1"})
        bus.publish(EventType.SESSION_STARTED, "other")

        assert [e.data for e in token_events] == [{"id": "s1"}]
        assert [e.token_mint for e in all_events] == [MINT, "other"]

    def test_unsubscribe(self):
        bus = EventBus()
        events = []
        unsubscribe = bus.subscribe(MINT, events.append)
        unsubscribe()
        unsubscribe()
        bus.publish(EventType.ERROR, MINT)
        assert events == []
        assert bus.subscriber_count(MINT) == 0

    def test_failing_handler_is_isolated(self):
        bus = EventBus()
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(MINT, broken)
        bus.subscribe(MINT, received.append)
        bus.publish(EventType.TRADE_EXECUTED, MINT)
        assert len(received) == 1

    def test_history_is_bounded_and_filterable(self):
        bus = EventBus(history_size=3)
        for _ in range(4):
            bus.publish(EventType.TRADE_EXECUTED, MINT)
        bus.publish(EventType.TRADE_FAILED, MINT)
        assert len(bus.history) == 3
        assert len(bus.recent(MINT, EventType.TRADE_FAILED)) == 1


class TestDatabaseManager:

    @pytest.fixture
    def db(self, tmp_path):
        return DatabaseManager(str(tmp_path / "bot.db"))

    def test_load_missing(self, db):
        assert db.load(OWNER, MINT) is None

    def test_save_and_load(self, db):
        settings = SmartProfitSettings.create(
            OWNER,
            MINT,
            wallet_ids=["w1", "w2"],
            trailing_stop_enabled=True,
            platform="pumpfun",
            total_tokens_held=1000,
            total_sol_invested=0.5,
        )
        db.save(settings)
        loaded = db.load(OWNER, MINT)
        assert loaded == settings
        assert loaded.platform is Platform.PUMPFUN
        assert loaded.trailing_stop_enabled is True

    def test_save_is_upsert(self, db):
        settings = SmartProfitSettings.create(OWNER, MINT)
        db.save(settings)
        db.save(settings.merged(stop_loss_percent=7, enabled=False))
        loaded = db.load(OWNER, MINT)
        assert loaded.stop_loss_percent == 7
        assert loaded.enabled is False
        assert db.delete(OWNER, MINT) is True
        assert db.delete(OWNER, MINT) is False

    def test_execution_log(self, db):
        execution = SmartProfitExecution(
            rule=RuleType.STOP_LOSS,
            trigger_price=1e-6,
            profit_percent=-25.0,
            sell_percent=100.0,
            tokens_requested=1000,
            tokens_sold=1000,
            sol_received=0.001,
            signatures=["sig-1"],
            success=True,
        )
        assert db.log_execution(OWNER, MINT, execution) > 0
        rows = db.get_executions(OWNER, MINT)
        assert rows[0]["rule"] == "stop_loss"
        assert rows[0]["signatures"] == ["sig-1"]
        assert rows[0]["success"] is True

    def test_record_session(self, db):
        session = Session(owner_id=OWNER, token_mint=MINT, platform=Platform.RAYDIUM, settings=SessionSettings())
        session.status = SessionStatus.STOPPED
        session.stop_reason = "completed"
        session.executed_volume_sol = 1.02
        db.record_session(session)
        db.record_session(replace(session, total_trades=12))

        rows = db.get_sessions(OWNER)
        assert len(rows) == 1
        assert rows[0]["status"] == "stopped"
        assert rows[0]["total_trades"] == 12
        assert rows[0]["strategy"] == "DBPM"


class TestRetry:

    @pytest.mark.asyncio
    async def test_retries_listed_exceptions(self):
        calls = []

        @async_retry(max_attempts=3, delay=0, exceptions=(httpx.TransportError,))
        async def flaky():
            calls.append(1)
            if len(calls) < 3:
                raise httpx.ConnectError("refused")
            return "ok"

        assert await flaky() == "ok"
        assert len(calls) == 3

    @pytest.mark.asyncio
    async def test_other_exceptions_propagate_immediately(self):
        calls = []

        @async_retry(max_attempts=3, delay=0, exceptions=(httpx.TransportError,))
        async def broken():
            calls.append(1)
            raise KeyError("usdPrice")

        with pytest.raises(KeyError):
            await broken()
        assert len(calls) == 1

    @pytest.mark.asyncio
    async def test_gives_up_after_max_attempts(self):
        @async_retry(max_attempts=2, delay=0, exceptions=(httpx.TransportError,))
        async def down():
            raise httpx.ReadTimeout("slow")

        with pytest.raises(httpx.ReadTimeout):
            await down()

    def test_circuit_breaker_cycle(self):
        breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=0.0, name="test")
        breaker.record_failure()
        assert breaker.state == "CLOSED"
        breaker.record_failure()
        assert breaker.state == "OPEN"
        assert breaker.can_execute()
        assert breaker.state == "HALF_OPEN"
        assert not breaker.can_execute()
        breaker.record_success()
        assert breaker.get_status() == {
            "name": "test", "state": "CLOSED", "failures": 0, "threshold": 2, "retry_in": 0.0,
        }

    def test_open_breaker_blocks(self):
        breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=60.0)
        breaker.record_failure()
        assert not breaker.can_execute()
        assert 0 < breaker.retry_in() <= 60.0

    def test_failed_half_open_call_reopens(self):
        breaker = CircuitBreaker(failure_threshold=3, recovery_timeout=0.0)
        for _ in range(3):
            breaker.record_failure()
        assert breaker.can_execute()
        breaker.record_failure()
        assert breaker.state == "OPEN"


class TestLogging:

    def test_colours_by_message(self):
        formatter = ColoredFormatter()
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "🚨 EMERGENCY STOP", None, None)
        assert formatter.format(record).startswith(ColoredFormatter.NEON_RED)
        record = logging.LogRecord("volume_bot.session", logging.INFO, __file__, 1, "BUY %.1f SOL", (0.1,), None)
        line = formatter.format(record)
        assert line.startswith(ColoredFormatter.NEON_GREEN)
        assert "session BUY 0.1 SOL" in line

    def test_setup_logging_writes_file(self, tmp_path):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging(replace(Settings(), LOG_DIR=str(tmp_path / "logs"), LOG_LEVEL="DEBUG"))
            logging.getLogger("volume_bot.config").info("config loaded")
            logging.getLogger("volume_bot.session").info("SESSION started")
            for handler in root.handlers:
                handler.flush()
            full_log = (tmp_path / "logs" / "volume_bot.log").read_text(encoding="utf-8")
            trade_log = (tmp_path / "logs" / "trades.log").read_text(encoding="utf-8")
            assert "config loaded" in full_log and "SESSION started" in full_log
            assert "SESSION started" in trade_log
            assert "config loaded" not in trade_log
            assert logging.getLogger("httpx").level == logging.WARNING
        finally:
            for handler in root.handlers:
                handler.close()
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)
