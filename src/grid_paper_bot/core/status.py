"""ステータススナップショット生成モジュール."""

from datetime import datetime
from typing import Any

from grid_paper_bot.config import Settings
from grid_paper_bot.core.fills import capacity_block
from grid_paper_bot.core.ledger import PositionLedger
from grid_paper_bot.core.reanchor import calculate_drift_pct
from grid_paper_bot.models import EngineState, FillEvent, LadderLevel


def build_status(state: EngineState, config: Settings) -> dict[str, Any]:
    """
    エンジン状態からJSONシリアライズ可能なステータスを生成.

    返す dict は状態と値を共有しない（ティック中の変更の影響を受けない）。

    guard_blocked は容量ガードにより次のBUYが拒否される状態かを表す。
    buy_halted / buy_halt_reason は直近のBUYパスが打ち切られたか（現金不足を含む）を表し、
    guard_reason は容量ガードの理由、なければ直近の打ち切り理由。

    Args:
        state: エンジン状態
        config: アプリケーション設定

    Returns:
        dict: ステータス
    """
    ledger = PositionLedger(state)
    mark = state.last_price
    anchor = state.anchor.anchor_price
    open_count = ledger.open_count
    block = capacity_block(open_count, config)
    guard_reason = block or state.last_buy_block

    drift_pct = None
    if mark is not None and anchor is not None:
        drift_pct = calculate_drift_pct(mark, anchor) * 100

    return {
        "symbol": config.symbol,
        "tick": state.tick_count,
        "mark_price": mark,
        "price_source": state.last_price_source,
        "price_at": _iso(state.last_price_at),
        "anchor_price": anchor,
        "anchor_created_at": _iso(state.anchor.created_at),
        "drift_pct": drift_pct,
        "balances": {
            "cash": state.balances.cash,
            "asset_qty": state.balances.asset_qty,
        },
        "portfolio_value": ledger.portfolio_value(mark) if mark is not None else None,
        "capacity": {
            "buy": _capacity(open_count, config.buy_packet_capacity),
            "sell": _capacity(open_count, config.sell_packet_capacity),
        },
        "guard_blocked": block is not None,
        "guard_reason": guard_reason.value if guard_reason else None,
        "buy_halted": state.last_buy_block is not None,
        "buy_halt_reason": state.last_buy_block.value if state.last_buy_block else None,
        "average_entry_price": state.stats.average_entry_price,
        "breakeven_price": state.stats.average_entry_price,
        "realized_pnl": state.stats.realized_pnl,
        "unrealized_pnl": ledger.unrealized_pnl(mark) if mark is not None else None,
        "stats": {
            "fill_count": state.stats.fill_count,
            "buy_count": state.stats.buy_count,
            "sell_count": state.stats.sell_count,
            "reanchor_count": state.stats.reanchor_count,
        },
        "reanchor": {
            "enabled": config.reanchor_enabled,
            "last_reanchor_at": _iso(state.reanchor.last_reanchor_at),
            "last_fill_at": _iso(state.reanchor.last_fill_at),
            "last_decision": state.last_reanchor_reason.value
            if state.last_reanchor_reason
            else None,
        },
        "positions": [
            {
                "id": p.id,
                "entry_price": p.entry_price,
                "quantity": p.quantity,
                "opened_at": _iso(p.opened_at),
            }
            for p in state.positions
        ],
        "ladder": {
            "refill": config.ladder_refill,
            "buy": [_level(level) for level in state.buy_levels],
            "sell": [_level(level) for level in state.sell_levels],
        },
        "recent_fills": [_fill(event) for event in state.recent_fills[: config.recent_fills_limit]],
    }


def _capacity(open_count: int, capacity: int) -> dict[str, Any]:
    return {
        "capacity": capacity,
        "used": open_count,
        "usage_pct": open_count / capacity * 100,
    }


def _level(level: LadderLevel) -> dict[str, Any]:
    return {"index": level.index, "price": level.price, "status": level.status.value}


def _fill(event: FillEvent) -> dict[str, Any]:
    return {
        "side": event.side.value,
        "level_index": event.level_index,
        "price": event.price,
        "quantity": event.quantity,
        "position_id": event.position_id,
        "realized_pnl": event.realized_pnl,
        "filled_at": _iso(event.filled_at),
    }


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
