"""Order gateway 与行情 feed 的抽象接口。

核心只依赖这两个契约：
- OrderGateway：下单 / 撤单 / 按方向批量撤单，失败抛 GatewayError
- MarketFeed：按 symbol 订阅的推送通道，按到达顺序回调 tick 与私有推送
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Optional

from gate_mm.core.models import BalanceUpdate, OrderUpdate, PositionUpdate, Tick

TickHandler = Callable[[Tick], Awaitable[None]]
OrderHandler = Callable[[OrderUpdate], Awaitable[None]]
PositionHandler = Callable[[PositionUpdate], Awaitable[None]]
BalanceHandler = Callable[[BalanceUpdate], Awaitable[None]]


class OrderGateway(ABC):
    """下单通道（实盘交易所或模拟撮合）。"""

    async def initialize(self) -> None:
        return None

    @abstractmethod
    async def place_order(self, symbol: str, side: str, price: float, size: float, reduce_only: bool) -> str:
        """挂限价单，返回订单 ID。"""

    @abstractmethod
    async def cancel_order(self, order_id: str, symbol: str) -> None:
        """撤销单个订单。"""

    @abstractmethod
    async def cancel_all(self, symbol: str, side: Optional[str] = None) -> None:
        """撤销 symbol 的全部挂单；给定 side 时只撤该方向。"""

    async def close(self) -> None:
        return None


class MarketFeed(ABC):
    """行情推送。``connect()`` 持续运行直到 ``close()``，断线自动重连。"""

    on_tick: Optional[TickHandler] = None
    on_order: Optional[OrderHandler] = None
    on_position: Optional[PositionHandler] = None
    on_balance: Optional[BalanceHandler] = None

    @abstractmethod
    async def connect(self) -> None:
        """Run the subscription loop."""

    @abstractmethod
    async def close(self) -> None:
        """Stop delivering ticks and release the connection."""
