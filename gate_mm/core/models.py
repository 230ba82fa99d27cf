"""核心数据结构：Tick / OpenOrder / Fill / 推送事件 / 图表点。"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

BUY = "buy"
SELL = "sell"
SIDES = (BUY, SELL)


@dataclass(frozen=True)
class Tick:
    """行情推送：最新成交价 + 最优买卖价。"""
    symbol: str
    last_price: float
    best_bid: float = 0.0
    best_ask: float = 0.0
    ts: float = 0.0


@dataclass
class OpenOrder:
    """Live-mode cache entry; the gateway stays authoritative."""
    id: str
    price: float
    remaining_size: float
    side: str
    reduce_only: bool = False


@dataclass(frozen=True)
class Fill:
    order_id: str
    side: str
    price: float
    size: float
    reduce_only: bool
    fee: float = 0.0
    realized_pnl: float = 0.0


@dataclass(frozen=True)
class OrderUpdate:
    """Private order push (open / finished)."""
    id: str
    symbol: str
    side: str
    price: float
    left: float
    status: str
    reduce_only: bool = False

    @property
    def is_open(self) -> bool:
        return self.status == "open"


@dataclass(frozen=True)
class PositionUpdate:
    """Private position push. ``None`` means "this message does not cover that side"."""
    symbol: str
    long_size: Optional[float]
    short_size: Optional[float]
    unrealized_pnl: float = 0.0
    realized_pnl: Optional[float] = None


@dataclass(frozen=True)
class BalanceUpdate:
    currency: str
    balance: float


@dataclass(frozen=True)
class ChartPoint:
    time: str
    price: float
    bid: Optional[float] = None
    ask: Optional[float] = None
    reserve: Optional[float] = None
