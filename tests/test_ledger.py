"""ポジション台帳モジュールのテスト."""

from datetime import datetime, timedelta, timezone

import pytest

from grid_paper_bot.core.ledger import InvalidFillError, NoOpenPositionError, PositionLedger
from grid_paper_bot.models import Balances, EngineState

NOW = datetime(2025, 1, 21, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def state() -> EngineState:
    """テスト用エンジン状態."""
    return EngineState(balances=Balances(cash=1000.0))


class TestOpenPosition:
    """open_position のテスト."""

    def test_open_position(self, state: EngineState) -> None:
        """ポジションが追加され、IDが採番される."""
        ledger = PositionLedger(state)

        position = ledger.open_position(99.0, 0.5, NOW)

        assert position.id == 1
        assert position.entry_price == 99.0
        assert position.quantity == 0.5
        assert position.cost_basis == pytest.approx(49.5)
        assert position.opened_at == NOW
        assert state.positions == [position]
        assert state.next_position_id == 2
        assert ledger.open_count == 1

    def test_ids_monotonic(self, state: EngineState) -> None:
        """IDは単調増加し、決済後も再利用されない."""
        ledger = PositionLedger(state)

        first = ledger.open_position(100.0, 1.0, NOW)
        ledger.close_oldest_position(101.0)
        second = ledger.open_position(100.0, 1.0, NOW)

        assert second.id == first.id + 1

    def test_average_entry_price(self, state: EngineState) -> None:
        """平均取得単価は数量加重平均."""
        ledger = PositionLedger(state)

        ledger.open_position(100.0, 1.0, NOW)
        ledger.open_position(90.0, 3.0, NOW)

        # (100 + 270) / 4
        assert state.stats.average_entry_price == pytest.approx(92.5)

    @pytest.mark.parametrize(
        "price,quantity",
        [
            (0.0, 1.0),
            (-1.0, 1.0),
            (float("nan"), 1.0),
            (float("inf"), 1.0),
            (100.0, 0.0),
            (100.0, -0.5),
            (100.0, float("nan")),
        ],
    )
    def test_invalid_inputs(self, state: EngineState, price: float, quantity: float) -> None:
        """不正な価格・数量は InvalidFillError で、状態は変わらない."""
        ledger = PositionLedger(state)

        with pytest.raises(InvalidFillError):
            ledger.open_position(price, quantity, NOW)

        assert state.positions == []
        assert state.next_position_id == 1


class TestCloseOldestPosition:
    """close_oldest_position のテスト."""

    def test_no_open_position(self, state: EngineState) -> None:
        """ポジションがない場合は NoOpenPositionError."""
        with pytest.raises(NoOpenPositionError):
            PositionLedger(state).close_oldest_position(100.0)

    def test_realized_pnl(self, state: EngineState) -> None:
        """実現損益 = 数量 * 決済価格 - 取得原価."""
        ledger = PositionLedger(state)
        ledger.open_position(99.0, 2.0, NOW)

        position, realized = ledger.close_oldest_position(101.0)

        assert position.id == 1
        assert realized == pytest.approx(4.0)
        assert state.stats.realized_pnl == pytest.approx(4.0)
        assert state.positions == []
        assert state.stats.average_entry_price is None

    def test_fifo_regardless_of_entry_price(self, state: EngineState) -> None:
        """取得価格に関係なく古い順に決済される."""
        ledger = PositionLedger(state)
        p1 = ledger.open_position(95.0, 1.0, NOW)
        p2 = ledger.open_position(99.0, 1.0, NOW + timedelta(minutes=1))
        p3 = ledger.open_position(90.0, 1.0, NOW + timedelta(minutes=2))

        closed = [ledger.close_oldest_position(100.0)[0] for _ in range(3)]

        assert [p.id for p in closed] == [p1.id, p2.id, p3.id]

    def test_realized_pnl_accumulates_and_can_be_negative(self, state: EngineState) -> None:
        """実現損益は累積され、損失もそのまま計上される."""
        ledger = PositionLedger(state)
        ledger.open_position(100.0, 1.0, NOW)
        ledger.open_position(100.0, 1.0, NOW)

        ledger.close_oldest_position(103.0)
        ledger.close_oldest_position(98.0)

        assert state.stats.realized_pnl == pytest.approx(1.0)

    def test_average_recomputed_after_close(self, state: EngineState) -> None:
        """決済後に平均取得単価が再計算される."""
        ledger = PositionLedger(state)
        ledger.open_position(100.0, 1.0, NOW)
        ledger.open_position(90.0, 1.0, NOW)

        ledger.close_oldest_position(101.0)

        assert state.stats.average_entry_price == pytest.approx(90.0)

    def test_invalid_exit_price(self, state: EngineState) -> None:
        """不正な決済価格では決済しない."""
        ledger = PositionLedger(state)
        ledger.open_position(100.0, 1.0, NOW)

        with pytest.raises(InvalidFillError):
            ledger.close_oldest_position(float("nan"))

        assert ledger.open_count == 1


class TestValuation:
    """評価額・含み損益のテスト."""

    def test_unrealized_pnl(self, state: EngineState) -> None:
        """含み損益 = Σ (mark - entry) * 数量."""
        ledger = PositionLedger(state)
        ledger.open_position(100.0, 1.0, NOW)
        ledger.open_position(90.0, 2.0, NOW)

        # (95 - 100) * 1 + (95 - 90) * 2
        assert ledger.unrealized_pnl(95.0) == pytest.approx(5.0)

    def test_unrealized_pnl_empty(self, state: EngineState) -> None:
        """ポジションがなければ0."""
        assert PositionLedger(state).unrealized_pnl(123.0) == 0

    def test_portfolio_value(self, state: EngineState) -> None:
        """評価額 = 現金 + 保有数量 * mark."""
        state.balances.cash = 500.0
        state.balances.asset_qty = 2.5

        assert PositionLedger(state).portfolio_value(100.0) == pytest.approx(750.0)
