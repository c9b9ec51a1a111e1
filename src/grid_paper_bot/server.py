"""HTTPステータスサーバー."""

import logging

from aiohttp import web

from grid_paper_bot.core.engine import GridEngine

logger = logging.getLogger(__name__)

ENGINE_KEY = web.AppKey("engine", GridEngine)


async def handle_health(_request: web.Request) -> web.Response:
    """ヘルスチェック."""
    return web.Response(text="OK")


async def handle_index(request: web.Request) -> web.Response:
    """稼働確認用の短いテキスト."""
    status = request.app[ENGINE_KEY].status()
    return web.Response(
        text=f"Grid paper bot running | {status['symbol']} | tick {status['tick']}"
    )


async def handle_status(request: web.Request) -> web.Response:
    """直近のステータススナップショットをJSONで返す."""
    return web.json_response(request.app[ENGINE_KEY].status())


def create_app(engine: GridEngine) -> web.Application:
    """
    ステータス用の aiohttp アプリケーションを生成.

    Args:
        engine: ステータスを提供するエンジン

    Returns:
        web.Application: アプリケーション
    """
    app = web.Application()
    app[ENGINE_KEY] = engine
    app.router.add_get("/health", handle_health)
    app.router.add_get("/status", handle_status)
    app.router.add_get("/", handle_index)
    return app


async def start_server(app: web.Application, host: str, port: int) -> web.AppRunner:
    """
    サーバーを起動.

    Raises:
        OSError: ポートをバインドできない
    """
    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host, port)
    try:
        await site.start()
    except OSError:
        await runner.cleanup()
        raise
    logger.info(f"HTTP_LISTENING {host}:{port}")
    return runner
