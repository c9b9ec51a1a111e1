"""価格オラクル クライアント."""

import asyncio
import logging
import math
from datetime import datetime, timezone
from typing import Any

import aiohttp

from grid_paper_bot.client.exceptions import PriceUnavailable, ProviderError
from grid_paper_bot.config import Settings
from grid_paper_bot.models import PriceQuote

logger = logging.getLogger(__name__)


def parse_price(raw: Any, provider: str) -> float:
    """
    プロバイダーの価格値を検証して float に変換.

    Raises:
        ProviderError: 数値でない、有限でない、または0以下
    """
    try:
        price = float(raw)
    except (TypeError, ValueError) as e:
        raise ProviderError(f"{provider} bad price: {raw!r}") from e
    if not math.isfinite(price) or price <= 0:
        raise ProviderError(f"{provider} bad price: {raw!r}")
    return price


class PriceProvider:
    """価格プロバイダーの基底クラス."""

    name = "base"

    def url(self, symbol: str) -> str:
        """価格取得URLを生成."""
        raise NotImplementedError

    def extract(self, payload: dict[str, Any]) -> Any:
        """レスポンスJSONから価格値を取り出す."""
        raise NotImplementedError

    async def fetch(self, session: aiohttp.ClientSession, symbol: str, timeout: float) -> float:
        """
        価格を取得.

        Args:
            session: HTTPセッション
            symbol: 取引ペア (BASE-QUOTE)
            timeout: リクエストのタイムアウト (秒)

        Returns:
            float: 価格

        Raises:
            ProviderError: 取得またはパースに失敗
        """
        try:
            async with session.get(
                self.url(symbol),
                timeout=aiohttp.ClientTimeout(total=timeout),
            ) as resp:
                if resp.status != 200:
                    error_text = await resp.text()
                    raise ProviderError(f"{self.name} HTTP {resp.status}: {error_text[:200]}")
                payload = await resp.json()
        except aiohttp.ClientError as e:
            raise ProviderError(f"{self.name} network error: {e}") from e
        except asyncio.TimeoutError as e:
            raise ProviderError(f"{self.name} timed out after {timeout}s") from e
        except ValueError as e:
            raise ProviderError(f"{self.name} invalid JSON: {e}") from e

        try:
            raw = self.extract(payload)
        except (KeyError, IndexError, TypeError, AttributeError) as e:
            raise ProviderError(f"{self.name} unexpected response: {payload!r}") from e
        return parse_price(raw, self.name)


class CoinbaseProvider(PriceProvider):
    """Coinbase スポット価格."""

    name = "coinbase"

    def url(self, symbol: str) -> str:
        return f"https://api.coinbase.com/v2/prices/{symbol.upper()}/spot"

    def extract(self, payload: dict[str, Any]) -> Any:
        # {"data": {"amount": "123.45", "base": "SOL", "currency": "USD"}}
        return payload["data"]["amount"]


class KrakenProvider(PriceProvider):
    """Kraken ティッカー（直近約定価格）."""

    name = "kraken"

    def url(self, symbol: str) -> str:
        pair = symbol.upper().replace("-", "").replace("_", "").replace("/", "")
        return f"https://api.kraken.com/0/public/Ticker?pair={pair}"

    def extract(self, payload: dict[str, Any]) -> Any:
        # {"error": [], "result": {"SOLUSD": {"c": ["123.45", "1.0"], ...}}}
        if payload.get("error"):
            raise KeyError(str(payload["error"]))
        tickers = list(payload["result"].values())
        return tickers[0]["c"][0]


def create_session(config: Settings) -> aiohttp.ClientSession:
    """
    設定のDNSサーバーで名前解決する HTTPセッションを生成.

    dns_nameservers が空ならOSのリゾルバーを使う。

    Args:
        config: アプリケーション設定

    Returns:
        aiohttp.ClientSession: セッション
    """
    if not config.dns_nameservers:
        return aiohttp.ClientSession()
    resolver = aiohttp.AsyncResolver(nameservers=config.dns_nameservers)
    return aiohttp.ClientSession(connector=aiohttp.TCPConnector(resolver=resolver))


PROVIDERS: dict[str, type[PriceProvider]] = {
    CoinbaseProvider.name: CoinbaseProvider,
    KrakenProvider.name: KrakenProvider,
}


class PriceOracle:
    """
    価格オラクル.

    プロバイダーを優先順に試し、最初に成功した価格を返す。
    一巡で全て失敗した場合は待機して再試行し、全体を price_budget_seconds 以内に収める。
    """

    def __init__(self, config: Settings, providers: list[PriceProvider] | None = None):
        """
        価格オラクルを初期化.

        Args:
            config: アプリケーション設定
            providers: プロバイダー（テスト用、省略時は設定から生成）
        """
        self.config = config
        self.providers = providers or [PROVIDERS[name]() for name in config.price_providers]
        self.session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> "PriceOracle":
        """非同期コンテキストマネージャー (enter)."""
        self.session = create_session(self.config)
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """非同期コンテキストマネージャー (exit)."""
        if self.session:
            await self.session.close()

    async def fetch_price(self) -> PriceQuote:
        """
        現在価格を取得.

        Returns:
            PriceQuote: 価格と取得元

        Raises:
            PriceUnavailable: 全プロバイダー失敗またはタイムアウト
        """
        if self.session is None:
            raise RuntimeError("Session not initialized. Use 'async with' context manager.")

        try:
            return await asyncio.wait_for(
                self._fetch_rounds(self.session),
                timeout=self.config.price_budget_seconds,
            )
        except asyncio.TimeoutError as e:
            raise PriceUnavailable(
                f"price fetch exceeded {self.config.price_budget_seconds}s budget"
            ) from e

    async def _fetch_rounds(self, session: aiohttp.ClientSession) -> PriceQuote:
        errors: list[str] = []

        for attempt in range(self.config.price_retry_rounds):
            if attempt > 0:
                await asyncio.sleep(self.config.price_retry_backoff_seconds)

            for provider in self.providers:
                try:
                    price = await provider.fetch(
                        session,
                        self.config.symbol,
                        self.config.price_timeout_seconds,
                    )
                except ProviderError as e:
                    logger.warning(f"Price provider failed (round {attempt + 1}): {e}")
                    errors.append(str(e))
                    continue

                return PriceQuote(
                    price=price,
                    source=provider.name,
                    fetched_at=datetime.now(timezone.utc),
                )

        raise PriceUnavailable("; ".join(errors) or "no price providers configured")
