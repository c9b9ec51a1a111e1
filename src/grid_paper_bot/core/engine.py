"""グリッドエンジン（ティック実行）モジュール."""

import asyncio
import logging
from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

from grid_paper_bot.client import PriceOracle, PriceUnavailable
from grid_paper_bot.config import Settings
from grid_paper_bot.core.fills import evaluate_fills
from grid_paper_bot.core.ladder import top_up_ladder
from grid_paper_bot.core.reanchor import apply_anchor, apply_reanchor, evaluate_reanchor
from grid_paper_bot.core.status import build_status
from grid_paper_bot.models import Balances, EngineState, FillEvent, PriceQuote, Side
from grid_paper_bot.store import PersistenceError, SnapshotStore

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class GridEngine:
    """
    グリッドエンジン.

    EngineState を単独で所有し、ティックごとに
    価格取得 → 再アンカー判定 → 約定評価 → ステータス公開 → 保存 を行う。
    ティックは asyncio.Lock で直列化され、重複したティックは実行されない。
    """

    def __init__(
        self,
        config: Settings,
        oracle: PriceOracle,
        store: SnapshotStore | None = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        """
        エンジンを初期化.

        Args:
            config: アプリケーション設定
            oracle: 価格オラクル
            store: スナップショットストア（省略時は保存しない）
            clock: 現在時刻の取得関数（テスト用）
        """
        self.config = config
        self.oracle = oracle
        self.store = store
        self.clock = clock
        self.state = EngineState(
            balances=Balances(cash=config.start_cash_usd, asset_qty=config.start_asset_qty)
        )
        self.last_error: str | None = None
        self._lock = asyncio.Lock()
        self._status = self._publish_status()

    async def restore(self) -> bool:
        """
        前回のスナップショットを復元.

        Returns:
            bool: 復元できた場合 True
        """
        if self.store is None:
            return False
        try:
            loaded = await self.store.load_snapshot()
        except PersistenceError as e:
            logger.error(f"Failed to load snapshot, starting fresh: {e}")
            return False
        if loaded is None:
            logger.info("No snapshot found, starting fresh")
            return False

        self.state = loaded
        self._status = self._publish_status()
        logger.info(
            f"Restored snapshot: anchor={loaded.anchor.anchor_price} "
            f"positions={len(loaded.positions)} realized_pnl={loaded.stats.realized_pnl:.4f}"
        )
        return True

    def status(self) -> dict[str, Any]:
        """直近に公開したステータスを返す."""
        return self._status

    async def tick(self) -> bool:
        """
        1ティックを実行.

        Returns:
            bool: ティックを実行した場合 True（実行中のティックがあれば False）
        """
        if self._lock.locked():
            logger.warning("Previous tick still running, skipping")
            return False

        async with self._lock:
            try:
                quote = await self.oracle.fetch_price()
            except PriceUnavailable as e:
                self.last_error = str(e)
                logger.warning(f"PRICE_FETCH_FAILED | {e}")
                self._status = self._publish_status()
                return True

            self.last_error = None
            self.advance(quote, self.clock())
            self._status = self._publish_status()
            await self.save()
            return True

    def advance(self, quote: PriceQuote, now: datetime) -> list[FillEvent]:
        """
        取得済みの価格でエンジン状態を進める.

        この処理の間に await は挟まない（状態変更はここで完結する）。

        Args:
            quote: 価格
            now: 現在時刻

        Returns:
            list[FillEvent]: このティックの約定
        """
        state = self.state
        state.tick_count += 1
        state.last_price = quote.price
        state.last_price_source = quote.source
        state.last_price_at = quote.fetched_at
        logger.info(f"PRICE {quote.price:.2f} | TICK {state.tick_count} | {quote.source}")

        if state.anchor.anchor_price is None:
            apply_anchor(state, quote.price, now, self.config)
            logger.info(f"ANCHOR initialized at {quote.price:.4f}")

        decision = evaluate_reanchor(state, quote.price, now, self.config)
        if decision.reanchor:
            apply_reanchor(state, quote.price, now, self.config)
            return []

        events = evaluate_fills(quote.price, state, self.config, now)

        if self.config.ladder_refill == "top_up" and events:
            self._top_up(state.anchor.anchor_price or quote.price)

        return events

    def _top_up(self, anchor: float) -> None:
        config = self.config
        self.state.buy_levels = top_up_ladder(
            anchor, self.state.buy_levels, Side.BUY, config.buy_step_pct, config.levels_per_side
        )
        self.state.sell_levels = top_up_ladder(
            anchor, self.state.sell_levels, Side.SELL, config.sell_step_pct, config.levels_per_side
        )

    async def save(self) -> None:
        """スナップショットを保存（失敗はログのみ）."""
        if self.store is None:
            return
        try:
            await self.store.save_snapshot(self.state)
        except PersistenceError as e:
            logger.error(f"Failed to save snapshot: {e}")

    async def run(self, stop_event: asyncio.Event) -> None:
        """
        stop_event がセットされるまでティックを繰り返す.

        前のティックが終わってから次の間隔を計るため、ティックは重ならない。

        Args:
            stop_event: 停止イベント
        """
        loop = asyncio.get_running_loop()
        logger.info(f"Tick loop started (interval={self.config.tick_interval_seconds}s)")

        while not stop_event.is_set():
            started = loop.time()
            try:
                await self.tick()
            except Exception as e:
                logger.exception(f"Unexpected error in tick: {e}")

            delay = max(0.0, self.config.tick_interval_seconds - (loop.time() - started))
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass

        logger.info("Tick loop stopped")

    def _publish_status(self) -> dict[str, Any]:
        status = build_status(self.state, self.config)
        status["last_error"] = self.last_error
        return status
