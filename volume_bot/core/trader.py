"""
Trade executors

The scheduler and the smart profit monitor place every trade through a
``TradeExecutor``:

- PaperTradeExecutor: simulated fills against a price source (slippage + fee)
- PumpPortalTradeExecutor: PumpPortal local-trade API, signed locally and
  submitted through our own RPC
"""
from __future__ import annotations

import logging
import random
import uuid
from typing import TYPE_CHECKING, Optional, Protocol

import aiohttp
from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.types import TxOpts
from solders.transaction import VersionedTransaction  # type: ignore

from volume_bot.core.models import Direction, Platform, TradeResult
from volume_bot.core.wallet import WalletHandle
from volume_bot.exceptions import PriceUnavailableException, SwapException
from volume_bot.utils.retry import CircuitBreaker

if TYPE_CHECKING:
    from volume_bot.config import Settings
    from volume_bot.core.price_feed import PriceSource

logger = logging.getLogger("volume_bot.trader")


class TradeExecutor(Protocol):
    async def execute(
        self,
        wallet: WalletHandle,
        token_mint: str,
        direction: Direction,
        size_sol: float,
        slippage_bps: int,
        platform: Platform,
        token_amount: Optional[float] = None,
    ) -> TradeResult:
        """Place one trade. ``token_amount`` sells an exact token quantity."""
        ...


class PaperTradeExecutor:
    """Simulated fills, priced from a ``PriceSource``."""

    def __init__(
        self,
        settings: Settings,
        price_source: PriceSource,
        seed: int | None = None,
        failure_rate: float = 0.0,
    ) -> None:
        self.settings = settings
        self.price_source = price_source
        self.rng = random.Random(seed)
        self.failure_rate = failure_rate
        self.fills: list[tuple[str, Direction, TradeResult]] = []

    def _fill_price(self, direction: Direction, price: float, slippage_bps: int) -> float:
        max_slip = min(self.settings.SIM_SLIPPAGE_PCT, slippage_bps / 10000.0)
        slippage = self.rng.uniform(-max_slip, max_slip)
        fee_pct = min(0.5, self.settings.SIM_FEE_BPS / 10000.0)
        if direction is Direction.BUY:
            fill_price = price * (1 + slippage) * (1 + fee_pct)
        else:
            fill_price = price * (1 + slippage) * (1 - fee_pct)
        return max(1e-12, fill_price)

    async def execute(
        self,
        wallet: WalletHandle,
        token_mint: str,
        direction: Direction,
        size_sol: float,
        slippage_bps: int,
        platform: Platform,
        token_amount: Optional[float] = None,
    ) -> TradeResult:
        if self.failure_rate > 0 and self.rng.random() < self.failure_rate:
            return TradeResult(success=False, error="simulated failure")

        try:
            quote = await self.price_source.get_price(token_mint)
        except PriceUnavailableException as e:
            return TradeResult(success=False, error=str(e))

        fill_price = self._fill_price(direction, quote.price_sol, slippage_bps)
        if direction is Direction.BUY:
            amount_sol = size_sol
            amount_tokens = size_sol / fill_price
        elif token_amount is not None:
            amount_tokens = token_amount
            amount_sol = token_amount * fill_price
        else:
            amount_sol = size_sol
            amount_tokens = size_sol / fill_price

        result = TradeResult(
            success=True,
            amount_sol=amount_sol,
            amount_tokens=amount_tokens,
            signature=f"paper-{uuid.uuid4().hex[:16]}",
        )
        self.fills.append((wallet.wallet_id, direction, result))
        logger.debug(
            "PAPER %s %s %.4f SOL / %.2f tokens @ %.10f via %s",
            direction.value.upper(), token_mint[:8], amount_sol, amount_tokens, fill_price, wallet.short,
        )
        return result


class PumpPortalTradeExecutor:
    """Live trades through the PumpPortal local-trade API.

    PumpPortal returns an unsigned serialized transaction; it is signed with
    the wallet keypair and submitted through ``AsyncClient``.
    """

    POOLS = {
        Platform.PUMPFUN: "pump",
        Platform.RAYDIUM: "raydium",
        Platform.JUPITER: "auto",
    }

    def __init__(
        self,
        settings: Settings,
        rpc_client: AsyncClient | None = None,
        price_source: PriceSource | None = None,
        session: aiohttp.ClientSession | None = None,
    ) -> None:
        self.settings = settings
        self.rpc = rpc_client or AsyncClient(settings.RPC_URL)
        self.price_source = price_source
        self._session = session
        self._owns_session = session is None
        self.breaker = CircuitBreaker(failure_threshold=5, recovery_timeout=30.0, name="PumpPortal")

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    def _payload(
        self,
        wallet: WalletHandle,
        token_mint: str,
        direction: Direction,
        size_sol: float,
        slippage_bps: int,
        platform: Platform,
        token_amount: Optional[float],
    ) -> dict:
        by_tokens = direction is Direction.SELL and token_amount is not None
        return {
            "publicKey": wallet.address,
            "action": direction.value,
            "mint": token_mint,
            "amount": token_amount if by_tokens else size_sol,
            "denominatedInSol": "false" if by_tokens else "true",
            "slippage": slippage_bps / 100,  # percent
            "priorityFee": self.settings.PRIORITY_FEE_SOL,
            "pool": self.POOLS.get(platform, "auto"),
        }

    async def _build_transaction(self, payload: dict) -> bytes:
        session = await self._get_session()
        timeout = aiohttp.ClientTimeout(total=15)
        async with session.post(self.settings.PUMPPORTAL_API_URL, data=payload, timeout=timeout) as resp:
            if resp.status != 200:
                error = await resp.text()
                raise SwapException("PumpPortal rejected trade", status=resp.status, error=error[:200])
            return await resp.read()

    async def execute(
        self,
        wallet: WalletHandle,
        token_mint: str,
        direction: Direction,
        size_sol: float,
        slippage_bps: int,
        platform: Platform,
        token_amount: Optional[float] = None,
    ) -> TradeResult:
        if wallet.keypair is None:
            return TradeResult(success=False, error=f"wallet {wallet.wallet_id} is watch-only")

        if not self.breaker.can_execute():
            logger.warning(
                "⚠️ PumpPortal breaker %s - skipping %s %s (retry in %.0fs)",
                self.breaker.state, direction.value, token_mint[:8], self.breaker.retry_in(),
            )
            return TradeResult(success=False, error="circuit breaker open")

        payload = self._payload(wallet, token_mint, direction, size_sol, slippage_bps, platform, token_amount)
        try:
            raw_tx = await self._build_transaction(payload)
            unsigned = VersionedTransaction.from_bytes(raw_tx)
            signed = VersionedTransaction(unsigned.message, [wallet.keypair])
            resp = await self.rpc.send_raw_transaction(
                bytes(signed),
                opts=TxOpts(skip_preflight=True, preflight_commitment=Confirmed),
            )
            signature = str(resp.value)
        except (aiohttp.ClientError, SolanaRpcException, SwapException, ValueError) as e:
            self.breaker.record_failure()
            logger.error("%s %s failed for %s: %s", direction.value.upper(), token_mint[:8], wallet.short, e)
            return TradeResult(success=False, error=str(e))

        self.breaker.record_success()
        amount_sol, amount_tokens = await self._estimate_fill(token_mint, direction, size_sol, token_amount)
        logger.info("✅ %s sent: %s (%s)", direction.value.upper(), signature, wallet.short)
        return TradeResult(success=True, amount_sol=amount_sol, amount_tokens=amount_tokens, signature=signature)

    async def _estimate_fill(
        self,
        token_mint: str,
        direction: Direction,
        size_sol: float,
        token_amount: Optional[float],
    ) -> tuple[float, float]:
        # Estimated from the current quote, not parsed from the confirmed transaction
        price = None
        if self.price_source is not None:
            try:
                price = (await self.price_source.get_price(token_mint)).price_sol
            except PriceUnavailableException:
                price = None

        if direction is Direction.SELL and token_amount is not None:
            return (token_amount * price if price else 0.0), token_amount
        return size_sol, (size_sol / price if price else 0.0)

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        await self.rpc.close()
