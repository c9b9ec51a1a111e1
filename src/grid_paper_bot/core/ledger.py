"""ポジション台帳モジュール."""

import math
from datetime import datetime

from grid_paper_bot.models import EngineState, Position


class InvalidFillError(Exception):
    """約定価格または数量が不正."""


class NoOpenPositionError(Exception):
    """決済対象のポジションがない."""


class PositionLedger:
    """
    ポジション台帳.

    EngineState のポジション・統計・ID採番を操作する。
    残高は変更しない（残高は約定シミュレーターが更新する）。
    """

    def __init__(self, state: EngineState):
        """
        台帳を初期化.

        Args:
            state: 操作対象のエンジン状態
        """
        self.state = state

    @property
    def open_count(self) -> int:
        """保有中ポジション数."""
        return len(self.state.positions)

    def oldest(self) -> Position | None:
        """最も古いポジションを返す."""
        return self.state.positions[0] if self.state.positions else None

    def open_position(self, entry_price: float, quantity: float, opened_at: datetime) -> Position:
        """
        ポジションを追加.

        Args:
            entry_price: 取得価格
            quantity: 数量
            opened_at: 取得時刻

        Returns:
            Position: 追加したポジション

        Raises:
            InvalidFillError: 価格または数量が有限の正数でない
        """
        _check_positive("entry_price", entry_price)
        _check_positive("quantity", quantity)

        position = Position(
            id=self.state.next_position_id,
            entry_price=entry_price,
            quantity=quantity,
            cost_basis=entry_price * quantity,
            opened_at=opened_at,
        )
        self.state.next_position_id += 1
        self.state.positions.append(position)
        self._recompute_average()
        return position

    def close_oldest_position(self, exit_price: float) -> tuple[Position, float]:
        """
        最も古いポジションを決済 (FIFO).

        Args:
            exit_price: 決済価格

        Returns:
            tuple[Position, float]: (決済したポジション, 実現損益)

        Raises:
            NoOpenPositionError: ポジションがない
            InvalidFillError: 決済価格が有限の正数でない
        """
        if not self.state.positions:
            raise NoOpenPositionError("no open position to close")
        _check_positive("exit_price", exit_price)

        position = self.state.positions.pop(0)
        realized = position.quantity * exit_price - position.cost_basis
        self.state.stats.realized_pnl += realized
        self._recompute_average()
        return position, realized

    def unrealized_pnl(self, mark_price: float) -> float:
        """含み損益を計算."""
        return sum((mark_price - p.entry_price) * p.quantity for p in self.state.positions)

    def portfolio_value(self, mark_price: float) -> float:
        """評価額 (現金 + 保有数量 * mark_price) を計算."""
        balances = self.state.balances
        return balances.cash + balances.asset_qty * mark_price

    def _recompute_average(self) -> None:
        positions = self.state.positions
        total_qty = sum(p.quantity for p in positions)
        if not positions or total_qty <= 0:
            self.state.stats.average_entry_price = None
            return
        self.state.stats.average_entry_price = sum(p.cost_basis for p in positions) / total_qty


def _check_positive(name: str, value: float) -> None:
    if not math.isfinite(value) or value <= 0:
        raise InvalidFillError(f"{name} must be positive and finite: {value}")
