"""ラダー構築モジュール.

このモジュールはアンカー価格からBUY/SELLレベルを計算し、
補充方針 top_up 用のレベル追加を提供します。
"""

import math

from grid_paper_bot.models import LadderLevel, LevelStatus, Side


def level_price(anchor_price: float, side: Side, step_pct: float, index: int) -> float:
    """レベル価格を計算.

    Args:
        anchor_price: アンカー価格
        side: サイド (BUY or SELL)
        step_pct: レベル間隔 (0.01 = 1%)
        index: アンカーからのレベル番号 (1始まり)

    Returns:
        float: レベル価格

    Example:
        >>> level_price(100.0, Side.BUY, 0.01, 2)
        98.0

        >>> level_price(100.0, Side.SELL, 0.01, 2)
        102.0
    """
    if side == Side.BUY:
        return anchor_price * (1 - step_pct * index)
    else:
        return anchor_price * (1 + step_pct * index)


def build_ladder(
    anchor_price: float,
    buy_step_pct: float,
    sell_step_pct: float,
    levels_per_side: int,
) -> tuple[list[LadderLevel], list[LadderLevel]]:
    """ラダーを構築.

    BUYはアンカーに近い順（価格の降順）、SELLもアンカーに近い順
    （価格の昇順）に並ぶ。約定評価はこの順序で行う。

    Args:
        anchor_price: アンカー価格
        buy_step_pct: BUYレベル間隔
        sell_step_pct: SELLレベル間隔
        levels_per_side: 片側のレベル数

    Returns:
        tuple[list[LadderLevel], list[LadderLevel]]: (BUYレベル, SELLレベル)

    Raises:
        ValueError: 入力が不正、またはBUYレベルが0以下になる場合
    """
    if not math.isfinite(anchor_price) or anchor_price <= 0:
        raise ValueError(f"anchor price must be positive and finite: {anchor_price}")
    if buy_step_pct <= 0 or sell_step_pct <= 0:
        raise ValueError("step pct must be positive")
    if levels_per_side < 1:
        raise ValueError("levels_per_side must be at least 1")

    buy_levels = []
    sell_levels = []
    for i in range(1, levels_per_side + 1):
        buy_price = level_price(anchor_price, Side.BUY, buy_step_pct, i)
        if buy_price <= 0:
            raise ValueError(f"buy level {i} would be non-positive: {buy_price}")
        buy_levels.append(LadderLevel(side=Side.BUY, index=i, price=buy_price))
        sell_levels.append(
            LadderLevel(
                side=Side.SELL,
                index=i,
                price=level_price(anchor_price, Side.SELL, sell_step_pct, i),
            )
        )

    return buy_levels, sell_levels


def top_up_ladder(
    anchor_price: float,
    levels: list[LadderLevel],
    side: Side,
    step_pct: float,
    levels_per_side: int,
) -> list[LadderLevel]:
    """約定済みレベルを外側の新しいレベルで置き換える.

    約定済みレベルを取り除き、WAITINGレベルが levels_per_side 個になるまで
    最も遠いレベルの外側に同じ間隔で追加する。0以下になるBUYレベルは作らない。

    Args:
        anchor_price: アンカー価格
        levels: 対象サイドのレベル（アンカーに近い順）
        side: サイド
        step_pct: レベル間隔
        levels_per_side: 片側のレベル数

    Returns:
        list[LadderLevel]: 補充後のレベル（アンカーに近い順）
    """
    waiting = [level for level in levels if level.status == LevelStatus.WAITING]
    next_index = max((level.index for level in levels), default=0) + 1

    while len(waiting) < levels_per_side:
        price = level_price(anchor_price, side, step_pct, next_index)
        if price <= 0:
            break
        waiting.append(LadderLevel(side=side, index=next_index, price=price))
        next_index += 1

    return waiting
