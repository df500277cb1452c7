"""Shared fakes and fixtures for the volume bot tests."""

from __future__ import annotations

import asyncio
import time
from collections import Counter

import pytest

from volume_bot.config.bot_config import MonitorConfig
from volume_bot.core.event_bus import EventBus
from volume_bot.core.models import Direction, PriceQuote, TradeResult
from volume_bot.core.wallet import WalletHandle
from volume_bot.exceptions import PriceUnavailableException

MINT = "So1anaTestMint11111111111111111111111111111"
OWNER = "user-1"


class FakeExecutor:
    """Records every call; fills at ``price`` unless told to fail or block."""

    def __init__(self, price: float = 1e-6, fail_wallets=(), gate: asyncio.Event | None = None):
        self.price = price
        self.price_schedule: list[float] = []
        self.fail_wallets = set(fail_wallets)
        self.raise_wallets: set[str] = set()
        self.gate = gate
        self.calls: list[dict] = []
        self.active: Counter = Counter()
        self.max_active_per_wallet = 0

    def calls_for(self, wallet_id: str) -> int:
        return sum(1 for c in self.calls if c["wallet_id"] == wallet_id)

    async def execute(self, wallet, token_mint, direction, size_sol, slippage_bps, platform, token_amount=None):
        self.calls.append({
            "wallet_id": wallet.wallet_id,
            "direction": direction,
            "size_sol": size_sol,
            "token_amount": token_amount,
            "platform": platform,
        })
        self.active[wallet.wallet_id] += 1
        self.max_active_per_wallet = max(self.max_active_per_wallet, self.active[wallet.wallet_id])
        try:
            if self.gate is not None:
                await self.gate.wait()
            else:
                await asyncio.sleep(0)

            if wallet.wallet_id in self.raise_wallets:
                raise RuntimeError("rpc exploded")
            if wallet.wallet_id in self.fail_wallets:
                return TradeResult(success=False, error="simulated failure")

            price = self.price_schedule.pop(0) if self.price_schedule else self.price
            if direction is Direction.SELL and token_amount is not None:
                return TradeResult(
                    success=True,
                    amount_sol=token_amount * price,
                    amount_tokens=token_amount,
                    signature=f"sig-{len(self.calls)}",
                )
            return TradeResult(
                success=True,
                amount_sol=size_sol,
                amount_tokens=size_sol / price,
                signature=f"sig-{len(self.calls)}",
            )
        finally:
            self.active[wallet.wallet_id] -= 1


class ScriptedPriceSource:
    """Returns prices from a script; ``None`` entries raise PriceUnavailableException.

    Once the script is exhausted the last entry repeats.
    """

    def __init__(self, prices=(), age_sec: float = 0.0):
        self.prices = list(prices)
        self.age_sec = age_sec
        self.calls = 0
        self._last = None

    def push(self, *prices) -> None:
        self.prices.extend(prices)

    async def get_price(self, token_mint: str) -> PriceQuote:
        self.calls += 1
        if self.prices:
            self._last = self.prices.pop(0)
        if self._last is None:
            raise PriceUnavailableException("scripted outage", token_mint=token_mint)
        return PriceQuote(
            token_mint=token_mint,
            price_sol=self._last,
            as_of=time.time() - self.age_sec,
            source="script",
        )


async def wait_until(predicate, timeout: float = 3.0, step: float = 0.005) -> None:
    deadline = time.monotonic() + timeout
    while not predicate():
        if time.monotonic() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(step)


@pytest.fixture
def wallets():
    return [WalletHandle(wallet_id=f"w{i}", address=f"addr{i}") for i in range(1, 4)]


@pytest.fixture
def executor():
    return FakeExecutor()


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def slow_monitor_config():
    """Poll loop effectively parked; tests drive ``evaluate()`` by hand."""
    return MonitorConfig(poll_interval_sec=3600, backoff_interval_sec=7200, failures_before_backoff=3)
