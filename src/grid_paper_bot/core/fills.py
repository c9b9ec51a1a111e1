"""約定シミュレーションモジュール."""

import logging
import math
from datetime import datetime

from grid_paper_bot.config import Settings
from grid_paper_bot.core.ledger import InvalidFillError, PositionLedger
from grid_paper_bot.models import (
    BuyBlock,
    EngineState,
    FillEvent,
    LevelStatus,
    Side,
)

logger = logging.getLogger(__name__)

# 保有数量と決済数量の比較に使う相対許容誤差
QTY_REL_TOL = 1e-9


def capacity_block(open_count: int, config: Settings) -> BuyBlock | None:
    """
    パケット容量により新規BUYが拒否されるか判定.

    決済用パケットを確保できないポジションは開かない。

    Args:
        open_count: 保有中ポジション数
        config: アプリケーション設定

    Returns:
        BuyBlock | None: 拒否理由（受け入れ可能なら None）
    """
    if open_count >= config.buy_packet_capacity:
        return BuyBlock.BUY_CAPACITY
    if open_count + 1 > config.sell_packet_capacity:
        return BuyBlock.SELL_CAPACITY
    return None


def evaluate_fills(
    current_price: float,
    state: EngineState,
    config: Settings,
    now: datetime,
) -> list[FillEvent]:
    """
    ラダーを現在価格で評価し、約定をシミュレート.

    BUYパス → SELLパスの順に、それぞれアンカーに近いレベルから評価する。
    ガードに掛かった時点でそのパスは打ち切り、遠いレベルには進まない。

    Args:
        current_price: 現在価格
        state: エンジン状態
        config: アプリケーション設定
        now: 現在時刻

    Returns:
        list[FillEvent]: 発生した約定（発生順）
    """
    ledger = PositionLedger(state)
    events: list[FillEvent] = []

    state.last_buy_block = None
    events.extend(_buy_pass(current_price, state, ledger, config, now))
    events.extend(_sell_pass(current_price, state, ledger, now))

    for event in events:
        state.stats.fill_count += 1
        if event.side == Side.BUY:
            state.stats.buy_count += 1
        else:
            state.stats.sell_count += 1
        state.recent_fills.insert(0, event)
    del state.recent_fills[config.recent_fills_limit :]

    if events:
        state.reanchor.last_fill_at = now

    return events


def _buy_pass(
    current_price: float,
    state: EngineState,
    ledger: PositionLedger,
    config: Settings,
    now: datetime,
) -> list[FillEvent]:
    events = []
    balances = state.balances

    for level in state.buy_levels:
        if level.status != LevelStatus.WAITING or current_price > level.price:
            continue

        quantity = config.order_notional_usd / level.price
        cost = quantity * level.price

        block = capacity_block(ledger.open_count, config)
        if block is None and balances.cash < cost:
            block = BuyBlock.INSUFFICIENT_CASH
        if block is not None:
            state.last_buy_block = block
            logger.debug(f"BUY pass halted at level {level.index} ({level.price:.4f}): {block.value}")
            break

        try:
            position = ledger.open_position(level.price, quantity, now)
        except InvalidFillError as e:
            state.last_buy_block = BuyBlock.INVALID_FILL
            logger.error(f"Rejected BUY at level {level.index}: {e}")
            break

        balances.cash -= cost
        balances.asset_qty += quantity
        level.status = LevelStatus.FILLED
        events.append(
            FillEvent(
                side=Side.BUY,
                level_index=level.index,
                price=level.price,
                quantity=quantity,
                position_id=position.id,
                filled_at=now,
            )
        )
        logger.info(
            f"FILL BUY level={level.index} price={level.price:.4f} qty={quantity:.6f} "
            f"cash={balances.cash:.2f}"
        )

    return events


def _sell_pass(
    current_price: float,
    state: EngineState,
    ledger: PositionLedger,
    now: datetime,
) -> list[FillEvent]:
    events = []
    balances = state.balances

    for level in state.sell_levels:
        if level.status != LevelStatus.WAITING or current_price < level.price:
            continue

        oldest = ledger.oldest()
        if oldest is None:
            logger.debug(f"SELL pass halted at level {level.index}: no open position")
            break
        if balances.asset_qty < oldest.quantity and not math.isclose(
            balances.asset_qty, oldest.quantity, rel_tol=QTY_REL_TOL
        ):
            logger.warning(
                f"SELL pass halted at level {level.index}: asset {balances.asset_qty} "
                f"< position {oldest.quantity}"
            )
            break

        try:
            position, realized = ledger.close_oldest_position(level.price)
        except InvalidFillError as e:
            logger.error(f"Rejected SELL at level {level.index}: {e}")
            break

        balances.cash += position.quantity * level.price
        # 浮動小数点の誤差で負にならないよう0で止める
        balances.asset_qty = max(0.0, balances.asset_qty - position.quantity)
        level.status = LevelStatus.FILLED
        events.append(
            FillEvent(
                side=Side.SELL,
                level_index=level.index,
                price=level.price,
                quantity=position.quantity,
                position_id=position.id,
                filled_at=now,
                realized_pnl=realized,
            )
        )
        logger.info(
            f"FILL SELL level={level.index} price={level.price:.4f} qty={position.quantity:.6f} "
            f"pnl={realized:+.4f} position={position.id}"
        )

    return events
