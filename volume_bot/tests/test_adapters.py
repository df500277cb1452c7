"""
Tests for the wallet, price and trade adapters

Network calls are replaced with httpx.MockTransport and in-process fakes.
"""

import json
from dataclasses import replace
from types import SimpleNamespace

import httpx
import pytest
from solders.hash import Hash  # type: ignore
from solders.keypair import Keypair  # type: ignore
from solders.message import MessageV0  # type: ignore
from solders.signature import Signature  # type: ignore
from solders.system_program import TransferParams, transfer  # type: ignore
from solders.transaction import VersionedTransaction  # type: ignore

from conftest import MINT
from volume_bot.config import SOL_MINT, Settings
from volume_bot.core.models import Direction, Platform
from volume_bot.core.price_feed import JupiterPriceSource, StaticPriceSource
from volume_bot.core.trader import PaperTradeExecutor, PumpPortalTradeExecutor
from volume_bot.core.wallet import WalletHandle, WalletPool
from volume_bot.exceptions import PriceUnavailableException, SwapException, WalletException


@pytest.fixture
def settings():
    return replace(Settings(), SIM_SLIPPAGE_PCT=0.0, SIM_FEE_BPS=100.0, JUPITER_API_KEY="", PRIORITY_FEE_SOL=0.001)


class TestWalletPool:

    def test_add_base58_secret(self):
        keypair = Keypair()
        handle = WalletPool().add_secret(str(keypair), "main")
        assert handle.wallet_id == "main"
        assert handle.address == str(keypair.pubkey())
        assert handle.can_sign

    def test_add_json_array_secret(self):
        keypair = Keypair()
        pool = WalletPool()
        handle = pool.add_secret(json.dumps(list(bytes(keypair))))
        assert handle.wallet_id == str(keypair.pubkey())
        assert pool.get(handle.wallet_id) is handle

    def test_bad_secret(self):
        with pytest.raises(WalletException):
            WalletPool().add_secret("not-a-secret!", "bad")

    def test_watch_only_address(self):
        address = str(Keypair().pubkey())
        handle = WalletPool().add_address(address, "watch")
        assert not handle.can_sign
        assert handle.short == f"{address[:4]}..{address[-4:]}"

    def test_bad_address(self):
        with pytest.raises(WalletException):
            WalletPool().add_address("not-a-pubkey!")

    def test_generate_and_resolve(self):
        pool = WalletPool()
        generated = pool.generate(3, prefix="paper")
        assert [w.wallet_id for w in generated] == ["paper-1", "paper-2", "paper-3"]
        assert pool.resolve(["paper-3", "paper-1"]) == [generated[2], generated[0]]
        assert len(pool) == 3
        with pytest.raises(WalletException):
            pool.resolve(["paper-9"])


class TestStaticPriceSource:

    @pytest.mark.asyncio
    async def test_fixed_price(self):
        source = StaticPriceSource({MINT: 0.5})
        quote = await source.get_price(MINT)
        assert quote.price_sol == 0.5
        assert quote.source == "static"

    @pytest.mark.asyncio
    async def test_unknown_or_zero_price_raises(self):
        source = StaticPriceSource({MINT: 0.0})
        with pytest.raises(PriceUnavailableException):
            await source.get_price(MINT)
        with pytest.raises(PriceUnavailableException):
            await source.get_price("other")

    @pytest.mark.asyncio
    async def test_random_walk_stays_in_band(self):
        source = StaticPriceSource({MINT: 1.0}, random_walk_pct=0.1, seed=7)
        quote = await source.get_price(MINT)
        assert 0.9 <= quote.price_sol <= 1.1
        assert source.peek(MINT) == quote.price_sol


class TestJupiterPriceSource:

    async def make_source(self, settings, handler):
        source = JupiterPriceSource(settings)
        await source._client.aclose()
        source._client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return source

    def test_endpoint_depends_on_api_key(self, settings):
        assert JupiterPriceSource(settings)._jupiter_url == JupiterPriceSource.JUPITER_LITE_URL
        keyed = JupiterPriceSource(replace(settings, JUPITER_API_KEY="secret"))
        assert keyed._jupiter_url == JupiterPriceSource.JUPITER_URL
        assert keyed._client.headers["x-api-key"] == "secret"

    @pytest.mark.asyncio
    async def test_jupiter_price_in_sol(self, settings):
        def handler(request):
            assert request.url.params["ids"] == f"{MINT},{SOL_MINT}"
            return httpx.Response(200, json={MINT: {"usdPrice": 0.002}, SOL_MINT: {"usdPrice": 200.0}})

        source = await self.make_source(settings, handler)
        quote = await source.get_price(MINT)
        await source.close()
        assert quote.price_sol == pytest.approx(1e-5)
        assert quote.source == "jupiter"

    @pytest.mark.asyncio
    async def test_falls_back_to_dexscreener(self, settings):
        def handler(request):
            if "dexscreener" in request.url.host:
                return httpx.Response(200, json={"pairs": [
                    {"quoteToken": {"address": "USDC"}, "priceNative": "9.0", "liquidity": {"usd": 1e9}},
                    {"quoteToken": {"address": SOL_MINT}, "priceNative": "0.0003", "liquidity": {"usd": 1000}},
                    {"quoteToken": {"address": SOL_MINT}, "priceNative": "0.0002", "liquidity": {"usd": 50000}},
                ]})
            return httpx.Response(500, text="down")

        source = await self.make_source(settings, handler)
        quote = await source.get_price(MINT)
        await source.close()
        assert quote.price_sol == pytest.approx(0.0002)
        assert quote.source == "dexscreener"

    @pytest.mark.asyncio
    async def test_unavailable_when_both_fail(self, settings):
        def handler(request):
            if "dexscreener" in request.url.host:
                return httpx.Response(200, json={"pairs": []})
            return httpx.Response(200, json={})

        source = await self.make_source(settings, handler)
        with pytest.raises(PriceUnavailableException):
            await source.get_price(MINT)
        await source.close()


class TestPaperTradeExecutor:

    @pytest.mark.asyncio
    async def test_buy_pays_fee(self, settings):
        executor = PaperTradeExecutor(settings, StaticPriceSource({MINT: 1e-6}), seed=1)
        wallet = WalletHandle("w1", "addr1")
        result = await executor.execute(wallet, MINT, Direction.BUY, 0.5, 500, Platform.JUPITER)
        assert result.success
        assert result.amount_sol == 0.5
        assert result.amount_tokens == pytest.approx(0.5 / 1.01e-6)
        assert result.signature.startswith("paper-")
        assert executor.fills[0][:2] == ("w1", Direction.BUY)

    @pytest.mark.asyncio
    async def test_sell_exact_tokens(self, settings):
        executor = PaperTradeExecutor(settings, StaticPriceSource({MINT: 1e-6}), seed=1)
        result = await executor.execute(
            WalletHandle("w1", "addr1"), MINT, Direction.SELL, 0.0, 500, Platform.PUMPFUN, token_amount=1000
        )
        assert result.amount_tokens == 1000
        assert result.amount_sol == pytest.approx(1000 * 1e-6 * 0.99)

    @pytest.mark.asyncio
    async def test_simulated_failure(self, settings):
        executor = PaperTradeExecutor(settings, StaticPriceSource({MINT: 1e-6}), failure_rate=1.0)
        result = await executor.execute(WalletHandle("w1", "addr1"), MINT, Direction.BUY, 0.1, 500, Platform.JUPITER)
        assert not result.success
        assert executor.fills == []

    @pytest.mark.asyncio
    async def test_missing_price_is_a_failed_trade(self, settings):
        executor = PaperTradeExecutor(settings, StaticPriceSource())
        result = await executor.execute(WalletHandle("w1", "addr1"), MINT, Direction.BUY, 0.1, 500, Platform.JUPITER)
        assert not result.success
        assert "No price available" in result.error


class FakeRpc:
    def __init__(self):
        self.sent = []

    async def send_raw_transaction(self, raw, opts=None):
        self.sent.append((raw, opts))
        return SimpleNamespace(value=Signature.default())

    async def close(self):
        pass


def unsigned_transaction(payer: Keypair) -> bytes:
    ix = transfer(TransferParams(from_pubkey=payer.pubkey(), to_pubkey=Keypair().pubkey(), lamports=1))
    message = MessageV0.try_compile(payer.pubkey(), [ix], [], Hash.default())
    return bytes(VersionedTransaction.populate(message, [Signature.default()]))


class TestPumpPortalTradeExecutor:

    def test_payload(self, settings):
        executor = PumpPortalTradeExecutor(settings, rpc_client=FakeRpc())
        wallet = WalletHandle("w1", "addr1")
        buy = executor._payload(wallet, MINT, Direction.BUY, 0.2, 1500, Platform.PUMPFUN, None)
        assert buy == {
            "publicKey": "addr1",
            "action": "buy",
            "mint": MINT,
            "amount": 0.2,
            "denominatedInSol": "true",
            "slippage": 15.0,
            "priorityFee": 0.001,
            "pool": "pump",
        }
        sell = executor._payload(wallet, MINT, Direction.SELL, 0.0, 500, Platform.JUPITER, 1234.0)
        assert sell["amount"] == 1234.0
        assert sell["denominatedInSol"] == "false"
        assert sell["pool"] == "auto"

    @pytest.mark.asyncio
    async def test_watch_only_wallet_fails(self, settings):
        executor = PumpPortalTradeExecutor(settings, rpc_client=FakeRpc())
        result = await executor.execute(WalletHandle("w1", "addr1"), MINT, Direction.BUY, 0.1, 500, Platform.JUPITER)
        assert not result.success
        assert "watch-only" in result.error

    @pytest.mark.asyncio
    async def test_signs_and_submits(self, settings):
        keypair = Keypair()
        rpc = FakeRpc()
        executor = PumpPortalTradeExecutor(settings, rpc_client=rpc, price_source=StaticPriceSource({MINT: 1e-6}))
        payloads = []

        async def build(payload):
            payloads.append(payload)
            return unsigned_transaction(keypair)

        executor._build_transaction = build
        wallet = WalletHandle("w1", str(keypair.pubkey()), keypair)
        result = await executor.execute(wallet, MINT, Direction.BUY, 0.1, 500, Platform.RAYDIUM)
        await executor.close()

        assert result.success
        assert result.signature == str(Signature.default())
        assert result.amount_tokens == pytest.approx(0.1 / 1e-6)
        assert payloads[0]["pool"] == "raydium"
        raw, opts = rpc.sent[0]
        assert VersionedTransaction.from_bytes(raw).signatures[0] != Signature.default()
        assert opts.skip_preflight is True

    @pytest.mark.asyncio
    async def test_rejection_trips_breaker(self, settings):
        keypair = Keypair()
        executor = PumpPortalTradeExecutor(settings, rpc_client=FakeRpc())
        executor.breaker.failure_threshold = 2

        async def build(payload):
            raise SwapException("PumpPortal rejected trade", status=400)

        executor._build_transaction = build
        wallet = WalletHandle("w1", str(keypair.pubkey()), keypair)
        for _ in range(2):
            result = await executor.execute(wallet, MINT, Direction.BUY, 0.1, 500, Platform.JUPITER)
            assert not result.success

        assert executor.breaker.state == "OPEN"
        result = await executor.execute(wallet, MINT, Direction.BUY, 0.1, 500, Platform.JUPITER)
        assert result.error == "circuit breaker open"
