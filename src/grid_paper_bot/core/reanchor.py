"""再アンカー判定モジュール.

このモジュールは乖離・クールダウン・直近約定・使用率のガードを評価し、
ラダーを現在価格に再センタリングするか判定します。
"""

import logging
import math
from datetime import datetime, timedelta

from grid_paper_bot.config import Settings
from grid_paper_bot.core.ladder import build_ladder
from grid_paper_bot.models import (
    AnchorState,
    EngineState,
    ReanchorDecision,
    ReanchorReason,
)

logger = logging.getLogger(__name__)


def calculate_drift_pct(current_price: float, anchor_price: float) -> float:
    """アンカーからの乖離率を計算.

    Example:
        >>> calculate_drift_pct(105.0, 100.0)
        0.05
    """
    return abs(current_price - anchor_price) / anchor_price


def usage_pcts(state: EngineState, config: Settings) -> tuple[float, float]:
    """
    パケット使用率を計算.

    保有ポジション1つにつき、BUY側の保有パケットとSELL側の決済パケットを1つずつ使用する。

    Returns:
        tuple[float, float]: (BUY側使用率, SELL側使用率)
    """
    open_count = len(state.positions)
    return (
        open_count / config.buy_packet_capacity,
        open_count / config.sell_packet_capacity,
    )


def should_reanchor(
    now: datetime,
    current_price: float,
    anchor_price: float | None,
    last_reanchor_at: datetime | None,
    last_fill_at: datetime | None,
    buy_usage_pct: float,
    sell_usage_pct: float,
    config: Settings,
) -> ReanchorDecision:
    """
    再アンカーすべきか判定.

    ガードを順に評価し、最初に該当したものを理由として返す。
    どれにも該当しなければ TRIGGERED。

    Args:
        now: 現在時刻
        current_price: 現在価格
        anchor_price: 現在のアンカー価格
        last_reanchor_at: 前回の再アンカー時刻
        last_fill_at: 前回の約定時刻
        buy_usage_pct: BUY側パケット使用率
        sell_usage_pct: SELL側パケット使用率
        config: アプリケーション設定

    Returns:
        ReanchorDecision: 判定結果

    Example:
        >>> # 乖離5%でも直近に約定があれば再アンカーしない
        >>> should_reanchor(now, 105.0, 100.0, None, now, 0.0, 0.0, config).reason
        <ReanchorReason.RECENT_FILL: 'RECENT_FILL'>
    """
    if not config.reanchor_enabled:
        return ReanchorDecision(False, ReanchorReason.DISABLED)

    if anchor_price is None or not math.isfinite(anchor_price) or anchor_price <= 0:
        return ReanchorDecision(False, ReanchorReason.NO_ANCHOR)

    if not math.isfinite(current_price) or current_price <= 0:
        return ReanchorDecision(False, ReanchorReason.INVALID_PRICE)

    if calculate_drift_pct(current_price, anchor_price) < config.reanchor_drift_pct:
        return ReanchorDecision(False, ReanchorReason.DRIFT_TOO_SMALL)

    cooldown = timedelta(minutes=config.reanchor_cooldown_minutes)
    if last_reanchor_at is not None and now - last_reanchor_at < cooldown:
        return ReanchorDecision(False, ReanchorReason.COOLDOWN)

    no_fill_window = timedelta(minutes=config.reanchor_no_fill_minutes)
    if last_fill_at is not None and now - last_fill_at < no_fill_window:
        return ReanchorDecision(False, ReanchorReason.RECENT_FILL)

    max_usage = config.reanchor_max_usage_pct
    if buy_usage_pct >= max_usage or sell_usage_pct >= max_usage:
        return ReanchorDecision(False, ReanchorReason.USAGE_TOO_HIGH)

    return ReanchorDecision(True, ReanchorReason.TRIGGERED)


def evaluate_reanchor(
    state: EngineState,
    current_price: float,
    now: datetime,
    config: Settings,
) -> ReanchorDecision:
    """エンジン状態から再アンカー判定を行い、結果を状態に記録."""
    buy_usage, sell_usage = usage_pcts(state, config)
    decision = should_reanchor(
        now=now,
        current_price=current_price,
        anchor_price=state.anchor.anchor_price,
        last_reanchor_at=state.reanchor.last_reanchor_at,
        last_fill_at=state.reanchor.last_fill_at,
        buy_usage_pct=buy_usage,
        sell_usage_pct=sell_usage,
        config=config,
    )
    state.last_reanchor_reason = decision.reason
    return decision


def apply_anchor(state: EngineState, price: float, now: datetime, config: Settings) -> None:
    """
    アンカーを設定してラダーを作り直す.

    初回アンカー設定と再アンカーの両方で使う。ポジションと残高は変更しない。

    Args:
        state: エンジン状態
        price: 新しいアンカー価格
        now: 現在時刻
        config: アプリケーション設定
    """
    buy_levels, sell_levels = build_ladder(
        price,
        config.buy_step_pct,
        config.sell_step_pct,
        config.levels_per_side,
    )
    state.anchor = AnchorState(anchor_price=price, created_at=now)
    state.buy_levels = buy_levels
    state.sell_levels = sell_levels
    state.reanchor.last_reanchor_at = now


def apply_reanchor(state: EngineState, price: float, now: datetime, config: Settings) -> None:
    """再アンカーを実行."""
    previous = state.anchor.anchor_price
    apply_anchor(state, price, now, config)
    state.stats.reanchor_count += 1
    logger.info(f"REANCHOR {previous} -> {price:.4f} (count={state.stats.reanchor_count})")
