"""エントリーポイント."""

import asyncio
import contextlib
import logging
import signal
import sys

import aiohttp

from grid_paper_bot.client import PriceOracle, create_session
from grid_paper_bot.config import Settings
from grid_paper_bot.core.engine import GridEngine
from grid_paper_bot.server import create_app, start_server
from grid_paper_bot.store import SnapshotStore

logger = logging.getLogger(__name__)


async def heartbeat(interval: float, stop_event: asyncio.Event) -> None:
    """生存確認ログを定期出力."""
    count = 0
    while not stop_event.is_set():
        count += 1
        logger.info(f"HEARTBEAT {count}")
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(stop_event.wait(), timeout=interval)


async def keepalive(config: Settings, stop_event: asyncio.Event) -> None:
    """
    自身と外部URLの /health を定期的に叩く.

    失敗はログのみ。
    """
    local_url = f"http://127.0.0.1:{config.status_port}/health"
    urls = [local_url]
    if config.keepalive_url:
        urls.append(config.keepalive_url.rstrip("/") + "/health")

    async with create_session(config) as session:
        while not stop_event.is_set():
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(stop_event.wait(), timeout=config.keepalive_interval_seconds)
            if stop_event.is_set():
                break
            try:
                for url in urls:
                    async with session.get(url, timeout=aiohttp.ClientTimeout(total=8)) as resp:
                        resp.raise_for_status()
                logger.info("KEEPALIVE ok")
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(f"KEEPALIVE_FAILED | {e}")


async def main(config: Settings) -> int:
    """
    ボットを起動し、停止シグナルまで実行.

    Returns:
        int: 終了コード
    """
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    async with PriceOracle(config) as oracle:
        engine = GridEngine(config, oracle, SnapshotStore(config))
        await engine.restore()

        try:
            runner = await start_server(create_app(engine), config.status_host, config.status_port)
        except OSError as e:
            logger.critical(f"Cannot bind status port {config.status_port}: {e}")
            return 1

        logger.info(
            f"Grid paper bot started: {config.symbol} levels={config.levels_per_side} "
            f"buy_step={config.buy_step_pct} sell_step={config.sell_step_pct} "
            f"notional=${config.order_notional_usd} refill={config.ladder_refill}"
        )

        try:
            await asyncio.gather(
                engine.run(stop_event),
                heartbeat(config.heartbeat_interval_seconds, stop_event),
                keepalive(config, stop_event),
            )
        finally:
            await engine.save()
            await runner.cleanup()
            logger.info("Grid paper bot stopped")

    return 0


def run() -> None:
    """コンソールスクリプトのエントリーポイント."""
    config = Settings()
    logging.basicConfig(
        level=config.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    sys.exit(asyncio.run(main(config)))


if __name__ == "__main__":
    run()
