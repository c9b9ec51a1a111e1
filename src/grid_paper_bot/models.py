"""Data models for Grid Paper Bot."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Side(str, Enum):
    """Ladder side."""

    BUY = "BUY"
    SELL = "SELL"


class LevelStatus(str, Enum):
    """Ladder level status."""

    WAITING = "WAITING"
    FILLED = "FILLED"


class ReanchorReason(str, Enum):
    """Outcome of a re-anchor evaluation."""

    DISABLED = "DISABLED"
    NO_ANCHOR = "NO_ANCHOR"
    INVALID_PRICE = "INVALID_PRICE"
    DRIFT_TOO_SMALL = "DRIFT_TOO_SMALL"
    COOLDOWN = "COOLDOWN"
    RECENT_FILL = "RECENT_FILL"
    USAGE_TOO_HIGH = "USAGE_TOO_HIGH"
    TRIGGERED = "TRIGGERED"


class BuyBlock(str, Enum):
    """Reason a BUY pass halted."""

    INSUFFICIENT_CASH = "INSUFFICIENT_CASH"
    BUY_CAPACITY = "BUY_CAPACITY"
    SELL_CAPACITY = "SELL_CAPACITY"
    INVALID_FILL = "INVALID_FILL"


@dataclass
class AnchorState:
    """Reference price the ladder is built around."""

    anchor_price: float | None = None
    created_at: datetime | None = None


@dataclass
class LadderLevel:
    """One rung of the ladder."""

    side: Side
    index: int
    price: float
    status: LevelStatus = LevelStatus.WAITING


@dataclass
class Position:
    """Open simulated inventory lot."""

    id: int
    entry_price: float
    quantity: float
    cost_basis: float
    opened_at: datetime


@dataclass
class Balances:
    """Simulated cash and asset balances."""

    cash: float
    asset_qty: float = 0.0


@dataclass
class Stats:
    """Aggregate fill counters and PnL."""

    fill_count: int = 0
    buy_count: int = 0
    sell_count: int = 0
    realized_pnl: float = 0.0
    average_entry_price: float | None = None
    reanchor_count: int = 0


@dataclass
class ReanchorState:
    """Timestamps driving re-anchor cooldown and inactivity checks."""

    last_reanchor_at: datetime | None = None
    last_fill_at: datetime | None = None


@dataclass
class FillEvent:
    """Simulated fill."""

    side: Side
    level_index: int
    price: float
    quantity: float
    position_id: int
    filled_at: datetime
    realized_pnl: float | None = None


@dataclass
class PriceQuote:
    """Price observation from the oracle."""

    price: float
    source: str
    fetched_at: datetime


@dataclass
class ReanchorDecision:
    """Result of should_reanchor."""

    reanchor: bool
    reason: ReanchorReason


@dataclass
class EngineState:
    """Everything the engine owns, persisted as one snapshot."""

    balances: Balances
    anchor: AnchorState = field(default_factory=AnchorState)
    buy_levels: list[LadderLevel] = field(default_factory=list)
    sell_levels: list[LadderLevel] = field(default_factory=list)
    positions: list[Position] = field(default_factory=list)
    stats: Stats = field(default_factory=Stats)
    reanchor: ReanchorState = field(default_factory=ReanchorState)
    next_position_id: int = 1
    recent_fills: list[FillEvent] = field(default_factory=list)  # most recent first
    last_price: float | None = None
    last_price_source: str | None = None
    last_price_at: datetime | None = None
    tick_count: int = 0
    last_buy_block: BuyBlock | None = None
    last_reanchor_reason: ReanchorReason | None = None
