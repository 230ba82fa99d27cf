from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Dict, List, Optional, Set, Tuple

from gate_mm.core.errors import GatewayError
from gate_mm.core.models import BalanceUpdate, OrderUpdate, PositionUpdate, Tick
from gate_mm.gateways.base import MarketFeed, OrderGateway


class FakeClock:
    def __init__(self, start_ts: Optional[float] = None):
        self._ts = float(time.time() if start_ts is None else start_ts)

    def now(self) -> float:
        return self._ts

    def advance(self, seconds: float) -> float:
        self._ts += float(seconds)
        return self._ts


class FakeFeed(MarketFeed):
    """
    In-memory feed: nothing connects, tests push events by hand.
    """

    def __init__(self, symbol: str = "XRP_USDT"):
        self.symbol = symbol
        self.running = False
        self.connect_count = 0
        self.closed = False

    async def connect(self):
        self.running = True
        self.connect_count += 1

    async def close(self):
        self.running = False
        self.closed = True

    async def push_price(self, price: float, *, bid: float = 0.0, ask: float = 0.0):
        if self.on_tick:
            await self.on_tick(Tick(symbol=self.symbol, last_price=float(price), best_bid=bid, best_ask=ask))

    async def push_order(self, update: OrderUpdate):
        if self.on_order:
            await self.on_order(update)

    async def push_position(self, update: PositionUpdate):
        if self.on_position:
            await self.on_position(update)

    async def push_balance(self, update: BalanceUpdate):
        if self.on_balance:
            await self.on_balance(update)


@dataclass
class GatewayCall:
    op: str  # "place"|"cancel"|"cancel_all"
    symbol: str
    side: Optional[str] = None
    price: float = 0.0
    size: float = 0.0
    reduce_only: bool = False
    order_id: Optional[str] = None


@dataclass
class RestingOrder:
    id: str
    side: str
    price: float
    size: float
    reduce_only: bool


class RecordingGateway(OrderGateway):
    """
    Simulates an exchange order gateway without fills; records every call.

    Failure injection:
    - fail_place_sides: placements on these sides raise GatewayError
    - fail_reduce_only: reduce-only placements raise GatewayError
    - fail_cancel: cancel_all raises GatewayError
    - place_latency_s: each placement sleeps first (lets tests interleave a stop)
    """

    def __init__(
        self,
        *,
        fail_place_sides: Optional[Set[str]] = None,
        fail_reduce_only: bool = False,
        fail_cancel: bool = False,
        place_latency_s: float = 0.0,
    ):
        self.fail_place_sides = set(fail_place_sides or ())
        self.fail_reduce_only = fail_reduce_only
        self.fail_cancel = fail_cancel
        self.place_latency_s = float(place_latency_s)

        self.calls: List[GatewayCall] = []
        self.resting: Dict[str, RestingOrder] = {}
        self.initialized = 0
        self.closed = False
        self._next_id = 1

    async def initialize(self):
        self.initialized += 1

    async def close(self):
        self.closed = True

    async def place_order(self, symbol: str, side: str, price: float, size: float, reduce_only: bool) -> str:
        self.calls.append(GatewayCall("place", symbol, side, float(price), float(size), bool(reduce_only)))
        if self.place_latency_s > 0:
            await asyncio.sleep(self.place_latency_s)
        if side in self.fail_place_sides or (reduce_only and self.fail_reduce_only):
            raise GatewayError(f"rejected {side} order", operation="place")

        oid = f"FAKE-{self._next_id}"
        self._next_id += 1
        self.resting[oid] = RestingOrder(oid, side, float(price), float(size), bool(reduce_only))
        return oid

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        self.calls.append(GatewayCall("cancel", symbol, order_id=order_id))
        if self.resting.pop(order_id, None) is None:
            raise GatewayError(f"order {order_id} not found", operation="cancel", retryable=False)

    async def cancel_all(self, symbol: str, side: Optional[str] = None) -> None:
        self.calls.append(GatewayCall("cancel_all", symbol, side))
        if self.fail_cancel:
            raise GatewayError("rate limited", operation="cancel_all")
        self.resting = {oid: o for oid, o in self.resting.items() if side is not None and o.side != side}

    def open_orders(self) -> List[RestingOrder]:
        return list(self.resting.values())

    def placements(self) -> List[GatewayCall]:
        return [c for c in self.calls if c.op == "place"]

    def resting_set(self) -> Set[Tuple[str, float, float, bool]]:
        return {(o.side, round(o.price, 8), o.size, o.reduce_only) for o in self.resting.values()}


@dataclass(frozen=True)
class ScenarioStep:
    dt: float
    price: float
    bid: float = 0.0
    ask: float = 0.0
