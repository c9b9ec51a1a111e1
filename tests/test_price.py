"""価格オラクル クライアントのテスト."""

import asyncio
from typing import Any
from unittest.mock import patch

import aiohttp
import pytest
from aioresponses import aioresponses

from grid_paper_bot.client import (
    CoinbaseProvider,
    KrakenProvider,
    PriceOracle,
    PriceProvider,
    PriceUnavailable,
    ProviderError,
    create_session,
)
from grid_paper_bot.client.price import parse_price
from grid_paper_bot.config import Settings

COINBASE_URL = "https://api.coinbase.com/v2/prices/SOL-USD/spot"
KRAKEN_URL = "https://api.kraken.com/0/public/Ticker?pair=SOLUSD"


@pytest.fixture
def config() -> Settings:
    """テスト用設定（待機なし）."""
    return Settings(
        _env_file=None,
        symbol="SOL-USD",
        price_providers=["coinbase", "kraken"],
        price_retry_rounds=2,
        price_retry_backoff_seconds=0,
    )


def coinbase_payload(amount: Any) -> dict[str, Any]:
    """Coinbase のレスポンス."""
    return {"data": {"amount": amount, "base": "SOL", "currency": "USD"}}


def kraken_payload(last: Any) -> dict[str, Any]:
    """Kraken のレスポンス."""
    return {"error": [], "result": {"SOLUSD": {"c": [last, "1.000"], "a": ["1", "1", "1"]}}}


class SlowProvider(PriceProvider):
    """応答しないプロバイダー."""

    name = "slow"

    async def fetch(self, session: aiohttp.ClientSession, symbol: str, timeout: float) -> float:
        await asyncio.sleep(10)
        return 1.0


class TestParsePrice:
    """parse_price のテスト."""

    def test_numeric_string(self) -> None:
        """数値文字列を変換できる."""
        assert parse_price("123.45", "coinbase") == 123.45

    @pytest.mark.parametrize("raw", ["abc", None, "0", "-5", "nan", "inf", {}])
    def test_invalid(self, raw: Any) -> None:
        """数値でない・有限でない・0以下は ProviderError."""
        with pytest.raises(ProviderError):
            parse_price(raw, "coinbase")


class TestProviders:
    """プロバイダーのURL生成のテスト."""

    def test_coinbase_url(self) -> None:
        """Coinbase はシンボルをそのまま使う."""
        assert CoinbaseProvider().url("sol-usd") == COINBASE_URL

    @pytest.mark.parametrize("symbol", ["SOL-USD", "sol_usd", "SOL/USD"])
    def test_kraken_url(self, symbol: str) -> None:
        """Kraken は区切り文字を除いたペア名を使う."""
        assert KrakenProvider().url(symbol) == KRAKEN_URL


class TestPriceOracle:
    """PriceOracle のテスト."""

    @pytest.mark.asyncio
    async def test_context_manager(self, config: Settings) -> None:
        """コンテキスト終了後はセッションがクローズされる."""
        async with PriceOracle(config) as oracle:
            assert oracle.session is not None

        assert oracle.session.closed

    @pytest.mark.asyncio
    async def test_requires_session(self, config: Settings) -> None:
        """セッションなしで呼ぶと RuntimeError."""
        with pytest.raises(RuntimeError):
            await PriceOracle(config).fetch_price()

    @pytest.mark.asyncio
    async def test_primary_provider(self, config: Settings) -> None:
        """最初のプロバイダーの価格を返す."""
        with aioresponses() as mocked:
            mocked.get(COINBASE_URL, payload=coinbase_payload("187.42"))

            async with PriceOracle(config) as oracle:
                quote = await oracle.fetch_price()

        assert quote.price == 187.42
        assert quote.source == "coinbase"
        assert quote.fetched_at.tzinfo is not None

    @pytest.mark.asyncio
    async def test_fallback_on_http_error(self, config: Settings) -> None:
        """HTTPエラー時は次のプロバイダーに切り替える."""
        with aioresponses() as mocked:
            mocked.get(COINBASE_URL, status=500, body="Internal Server Error")
            mocked.get(KRAKEN_URL, payload=kraken_payload("186.90"))

            async with PriceOracle(config) as oracle:
                quote = await oracle.fetch_price()

        assert quote.price == 186.90
        assert quote.source == "kraken"

    @pytest.mark.asyncio
    async def test_fallback_on_bad_price(self, config: Settings) -> None:
        """不正な価格は採用せず次のプロバイダーに切り替える."""
        with aioresponses() as mocked:
            mocked.get(COINBASE_URL, payload=coinbase_payload("0"))
            mocked.get(KRAKEN_URL, payload=kraken_payload("186.90"))

            async with PriceOracle(config) as oracle:
                quote = await oracle.fetch_price()

        assert quote.source == "kraken"

    @pytest.mark.asyncio
    async def test_fallback_on_network_error(self, config: Settings) -> None:
        """接続エラー・タイムアウトでも次のプロバイダーに切り替える."""
        with aioresponses() as mocked:
            mocked.get(COINBASE_URL, exception=aiohttp.ClientConnectionError("refused"))
            mocked.get(KRAKEN_URL, exception=asyncio.TimeoutError())
            mocked.get(COINBASE_URL, payload=coinbase_payload("185.00"))

            async with PriceOracle(config) as oracle:
                quote = await oracle.fetch_price()

        assert quote.price == 185.0
        assert quote.source == "coinbase"

    @pytest.mark.asyncio
    async def test_fallback_on_malformed_json(self, config: Settings) -> None:
        """JSONとして読めないレスポンスでも次のプロバイダーに切り替える."""
        with aioresponses() as mocked:
            mocked.get(COINBASE_URL, body="{not json", content_type="application/json")
            mocked.get(KRAKEN_URL, payload=kraken_payload("186.90"))

            async with PriceOracle(config) as oracle:
                quote = await oracle.fetch_price()

        assert quote.price == 186.90
        assert quote.source == "kraken"

    @pytest.mark.asyncio
    async def test_malformed_json_everywhere(self, config: Settings) -> None:
        """全プロバイダーが不正なJSONなら PriceUnavailable."""
        with aioresponses() as mocked:
            mocked.get(COINBASE_URL, body="{not json", content_type="application/json", repeat=True)
            mocked.get(KRAKEN_URL, body="<html>", content_type="application/json", repeat=True)

            async with PriceOracle(config) as oracle:
                with pytest.raises(PriceUnavailable, match="invalid JSON"):
                    await oracle.fetch_price()

    @pytest.mark.asyncio
    async def test_unexpected_payload(self, config: Settings) -> None:
        """想定外のレスポンス形式は失敗として扱う."""
        with aioresponses() as mocked:
            mocked.get(COINBASE_URL, payload={"errors": [{"id": "not_found"}]})
            mocked.get(KRAKEN_URL, payload={"error": ["EQuery:Unknown asset pair"], "result": {}})
            mocked.get(COINBASE_URL, payload={"data": {}})
            mocked.get(KRAKEN_URL, payload={"error": [], "result": {}})

            async with PriceOracle(config) as oracle:
                with pytest.raises(PriceUnavailable) as exc_info:
                    await oracle.fetch_price()

        assert "coinbase unexpected response" in str(exc_info.value)
        assert "kraken unexpected response" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_retry_round(self) -> None:
        """一巡で失敗しても次の試行で成功すれば価格を返す."""
        config = Settings(
            _env_file=None,
            price_providers=["coinbase"],
            price_retry_rounds=3,
            price_retry_backoff_seconds=0,
        )
        with aioresponses() as mocked:
            mocked.get(COINBASE_URL, status=503)
            mocked.get(COINBASE_URL, status=429)
            mocked.get(COINBASE_URL, payload=coinbase_payload("190.10"))

            async with PriceOracle(config) as oracle:
                quote = await oracle.fetch_price()

        assert quote.price == 190.10

    @pytest.mark.asyncio
    async def test_all_providers_fail(self, config: Settings) -> None:
        """全プロバイダーが全試行で失敗すると PriceUnavailable."""
        with aioresponses() as mocked:
            mocked.get(COINBASE_URL, status=500, repeat=True)
            mocked.get(KRAKEN_URL, status=502, repeat=True)

            async with PriceOracle(config) as oracle:
                with pytest.raises(PriceUnavailable) as exc_info:
                    await oracle.fetch_price()

        assert not isinstance(exc_info.value, ProviderError)
        assert "coinbase HTTP 500" in str(exc_info.value)
        assert "kraken HTTP 502" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_budget_exceeded(self) -> None:
        """全体の制限時間を超えると PriceUnavailable."""
        config = Settings(_env_file=None, price_budget_seconds=0.05)

        async with PriceOracle(config, providers=[SlowProvider()]) as oracle:
            with pytest.raises(PriceUnavailable, match="budget"):
                await oracle.fetch_price()

    def test_providers_from_config(self) -> None:
        """設定の順にプロバイダーが生成される."""
        config = Settings(_env_file=None, price_providers=["kraken", "coinbase"])

        oracle = PriceOracle(config)

        assert [p.name for p in oracle.providers] == ["kraken", "coinbase"]


class TestCreateSession:
    """create_session のテスト."""

    @pytest.mark.asyncio
    async def test_uses_configured_nameservers(self) -> None:
        """設定したDNSサーバーで名前解決する."""
        config = Settings(_env_file=None, dns_nameservers=["1.1.1.1", "8.8.8.8"])

        with patch(
            "grid_paper_bot.client.price.aiohttp.AsyncResolver", wraps=aiohttp.AsyncResolver
        ) as resolver_cls:
            session = create_session(config)
        await session.close()

        resolver_cls.assert_called_once_with(nameservers=["1.1.1.1", "8.8.8.8"])

    @pytest.mark.asyncio
    async def test_system_resolver_when_empty(self) -> None:
        """DNSサーバーが空ならOSのリゾルバーを使う."""
        config = Settings(_env_file=None, dns_nameservers=[])

        with patch("grid_paper_bot.client.price.aiohttp.AsyncResolver") as resolver_cls:
            session = create_session(config)
        await session.close()

        resolver_cls.assert_not_called()

    @pytest.mark.asyncio
    async def test_oracle_session_uses_nameservers(self) -> None:
        """PriceOracle のセッションも設定のDNSサーバーを使う."""
        config = Settings(_env_file=None, dns_nameservers=["9.9.9.9"])

        with patch(
            "grid_paper_bot.client.price.aiohttp.AsyncResolver", wraps=aiohttp.AsyncResolver
        ) as resolver_cls:
            async with PriceOracle(config):
                pass

        resolver_cls.assert_called_once_with(nameservers=["9.9.9.9"])
