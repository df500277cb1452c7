from __future__ import annotations

import logging
import random
import time
from typing import TYPE_CHECKING, Protocol

import httpx

from volume_bot.config import SOL_MINT
from volume_bot.core.models import PriceQuote
from volume_bot.exceptions import PriceUnavailableException
from volume_bot.utils.retry import async_retry

if TYPE_CHECKING:
    from volume_bot.config import Settings


class PriceSource(Protocol):
    async def get_price(self, token_mint: str) -> PriceQuote:
        """Latest token price in SOL; raises PriceUnavailableException."""
        ...


class JupiterPriceSource:
    """Token price in SOL from Jupiter Price API v3, DexScreener as fallback."""

    JUPITER_URL = "https://api.jup.ag/price/v3"
    JUPITER_LITE_URL = "https://lite-api.jup.ag/price/v3"
    DEXSCREENER_URL = "https://api.dexscreener.com/latest/dex/tokens/"

    def __init__(self, settings: Settings) -> None:
        self.settings = settings
        self.logger = logging.getLogger("volume_bot.price")
        headers = {}
        if settings.JUPITER_API_KEY:
            headers["x-api-key"] = settings.JUPITER_API_KEY
            self._jupiter_url = self.JUPITER_URL
        else:
            self._jupiter_url = self.JUPITER_LITE_URL
        self._client = httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, connect=5.0),
            limits=httpx.Limits(max_keepalive_connections=5),
            headers=headers,
        )

    async def get_price(self, token_mint: str) -> PriceQuote:
        try:
            price = await self._fetch_jupiter(token_mint)
            if price:
                return PriceQuote(token_mint=token_mint, price_sol=price, as_of=time.time(), source="jupiter")
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            self.logger.warning("Jupiter price failed for %s: %s", token_mint[:8], e)

        try:
            price = await self._fetch_dexscreener(token_mint)
            if price:
                return PriceQuote(token_mint=token_mint, price_sol=price, as_of=time.time(), source="dexscreener")
        except (httpx.HTTPError, ValueError, KeyError, TypeError) as e:
            self.logger.warning("DexScreener price failed for %s: %s", token_mint[:8], e)

        raise PriceUnavailableException("No price available", token_mint=token_mint)

    @async_retry(max_attempts=2, delay=0.5, exceptions=(httpx.TransportError,))
    async def _fetch_jupiter(self, token_mint: str) -> float | None:
        # Response format: {"<mint>": {"usdPrice": 0.123, ...}, "<SOL>": {...}}
        response = await self._client.get(self._jupiter_url, params={"ids": f"{token_mint},{SOL_MINT}"})
        response.raise_for_status()
        data = response.json()

        token = data.get(token_mint) or {}
        sol = data.get(SOL_MINT) or {}
        token_usd = float(token.get("usdPrice") or 0)
        sol_usd = float(sol.get("usdPrice") or 0)
        if token_usd <= 0 or sol_usd <= 0:
            return None
        return token_usd / sol_usd

    @async_retry(max_attempts=2, delay=0.5, exceptions=(httpx.TransportError,))
    async def _fetch_dexscreener(self, token_mint: str) -> float | None:
        response = await self._client.get(f"{self.DEXSCREENER_URL}{token_mint}")
        response.raise_for_status()
        pairs = response.json().get("pairs") or []

        # priceNative is quoted in the pair's quote token, so keep SOL pairs only
        sol_pairs = [
            p for p in pairs
            if (p.get("quoteToken") or {}).get("address") == SOL_MINT and p.get("priceNative")
        ]
        if not sol_pairs:
            return None
        best = max(sol_pairs, key=lambda p: float((p.get("liquidity") or {}).get("usd") or 0))
        price = float(best["priceNative"])
        return price if price > 0 else None

    async def close(self) -> None:
        await self._client.aclose()


class StaticPriceSource:
    """In-memory prices for paper sessions.

    With ``random_walk_pct`` set, every read moves the price by a uniform
    step of up to that fraction in either direction.
    """

    def __init__(
        self,
        prices: dict[str, float] | None = None,
        random_walk_pct: float = 0.0,
        seed: int | None = None,
    ) -> None:
        self._prices: dict[str, float] = dict(prices or {})
        self.random_walk_pct = random_walk_pct
        self.rng = random.Random(seed)

    def set_price(self, token_mint: str, price_sol: float) -> None:
        self._prices[token_mint] = price_sol

    def peek(self, token_mint: str) -> float | None:
        return self._prices.get(token_mint)

    async def get_price(self, token_mint: str) -> PriceQuote:
        price = self._prices.get(token_mint)
        if price is None or price <= 0:
            raise PriceUnavailableException("No price available", token_mint=token_mint)
        if self.random_walk_pct > 0:
            price = max(1e-12, price * (1 + self.rng.uniform(-self.random_walk_pct, self.random_walk_pct)))
            self._prices[token_mint] = price
        return PriceQuote(token_mint=token_mint, price_sol=price, as_of=time.time(), source="static")
