#!/usr/bin/env python3
"""稼働中ボットのステータス表示ツール（動作確認・デバッグ用）."""

import asyncio
import sys
from typing import Any

import aiohttp
from rich import box
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from grid_paper_bot.client import PriceOracle
from grid_paper_bot.config import Settings

console = Console()


def _money(value: Any) -> str:
    return "N/A" if value is None else f"${float(value):,.2f}"


def _pnl(value: Any) -> str:
    if value is None:
        return "N/A"
    pnl = float(value)
    color = "green" if pnl >= 0 else "red"
    sign = "+" if pnl >= 0 else ""
    return f"[{color}]{sign}${pnl:,.4f}[/{color}]"


async def fetch_status(url: str) -> dict[str, Any]:
    """ステータスエンドポイントからJSONを取得."""
    async with aiohttp.ClientSession() as session:
        async with session.get(url, timeout=aiohttp.ClientTimeout(total=10)) as resp:
            resp.raise_for_status()
            return await resp.json()


def show_summary(status: dict[str, Any]) -> None:
    """残高・損益・ガードを表示."""
    table = Table(title=f"📊 {status['symbol']} (tick {status['tick']})", box=box.ROUNDED)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value", style="green", justify="right")

    drift = status.get("drift_pct")
    table.add_row("Mark Price", f"{_money(status['mark_price'])} ({status.get('price_source') or '-'})")
    table.add_row("Anchor", _money(status["anchor_price"]))
    table.add_row("Drift", "N/A" if drift is None else f"{drift:.2f}%")
    table.add_row("Cash", _money(status["balances"]["cash"]))
    table.add_row("Asset Qty", f"{status['balances']['asset_qty']:.6f}")
    table.add_row("Portfolio Value", _money(status["portfolio_value"]))
    table.add_row("Average Entry", _money(status["average_entry_price"]))
    table.add_row("Realized PnL", _pnl(status["realized_pnl"]))
    table.add_row("Unrealized PnL", _pnl(status["unrealized_pnl"]))

    for side in ("buy", "sell"):
        cap = status["capacity"][side]
        table.add_row(f"{side.upper()} Packets", f"{cap['used']}/{cap['capacity']} ({cap['usage_pct']:.0f}%)")

    guard = "[red]BLOCKED[/red]" if status["guard_blocked"] else "[green]open[/green]"
    table.add_row("Guard", f"{guard} {status.get('guard_reason') or ''}")
    if status.get("buy_halted"):
        table.add_row("Last BUY Halt", f"[yellow]{status['buy_halt_reason']}[/yellow]")
    table.add_row("Last Re-anchor Decision", str(status["reanchor"]["last_decision"]))
    if status.get("last_error"):
        table.add_row("Last Error", f"[red]{status['last_error']}[/red]")

    console.print(table)


def show_ladder(status: dict[str, Any]) -> None:
    """ラダーを表示（SELLは遠い順、BUYは近い順）."""
    table = Table(title=f"🪜 Ladder (refill: {status['ladder']['refill']})", box=box.ROUNDED)
    table.add_column("Side", style="magenta")
    table.add_column("#", justify="right")
    table.add_column("Price", style="yellow", justify="right")
    table.add_column("Status")

    for level in reversed(status["ladder"]["sell"]):
        table.add_row("[red]SELL[/red]", str(level["index"]), _money(level["price"]), level["status"])
    table.add_row("ANCHOR", "", _money(status["anchor_price"]), "", style="bold")
    for level in status["ladder"]["buy"]:
        table.add_row("[green]BUY[/green]", str(level["index"]), _money(level["price"]), level["status"])

    console.print(table)


def show_fills(status: dict[str, Any]) -> None:
    """直近の約定を表示."""
    fills = status["recent_fills"]
    if not fills:
        console.print(Panel("[yellow]No fills yet[/yellow]", title="🧾 Recent Fills", box=box.ROUNDED))
        return

    table = Table(title=f"🧾 Recent Fills ({len(fills)})", box=box.ROUNDED)
    table.add_column("Time", style="cyan")
    table.add_column("Side", style="magenta")
    table.add_column("Price", style="yellow", justify="right")
    table.add_column("Qty", style="blue", justify="right")
    table.add_column("PnL", justify="right")

    for fill in fills:
        side_color = "green" if fill["side"] == "BUY" else "red"
        table.add_row(
            fill["filled_at"],
            f"[{side_color}]{fill['side']}[/{side_color}]",
            _money(fill["price"]),
            f"{fill['quantity']:.6f}",
            _pnl(fill["realized_pnl"]) if fill["realized_pnl"] is not None else "",
        )

    console.print(table)


async def show_price(config: Settings) -> None:
    """価格オラクルから現在価格を取得して表示."""
    async with PriceOracle(config) as oracle:
        quote = await oracle.fetch_price()
    console.print(f"💰 {config.symbol}: {_money(quote.price)} via {quote.source}")


async def main() -> None:
    """メイン処理."""
    if len(sys.argv) < 2:
        console.print("[red]Usage: python read_status.py <command> [url][/red]")
        console.print("Commands: status, ladder, fills, price")
        sys.exit(1)

    command = sys.argv[1].lower()
    config = Settings()
    url = sys.argv[2] if len(sys.argv) > 2 else f"http://127.0.0.1:{config.status_port}/status"

    try:
        if command == "price":
            await show_price(config)
            return

        status = await fetch_status(url)
        if command == "status":
            show_summary(status)
            console.print()
            show_ladder(status)
            console.print()
            show_fills(status)
        elif command == "ladder":
            show_ladder(status)
        elif command == "fills":
            show_fills(status)
        else:
            console.print(f"[red]Unknown command: {command}[/red]")
            console.print("Available commands: status, ladder, fills, price")
            sys.exit(1)

    except Exception as e:
        console.print(f"[red]❌ Fatal error: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
