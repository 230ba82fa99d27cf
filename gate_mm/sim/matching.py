from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from gate_mm.core.errors import GatewayError
from gate_mm.core.ledger import PositionLedger
from gate_mm.core.models import BUY, SELL, SIDES, Fill
from gate_mm.gateways.base import OrderGateway
from gate_mm.utils.logging import log_success

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SimulatedOrder:
    id: str
    side: str  # "buy"|"sell"
    price: float
    size: float
    reduce_only: bool
    created_at: float


class SimulatedMatchingEngine(OrderGateway):
    """
    Paper-trading matching engine driven by the last-trade price.

    Deliberately simpler than an exchange: there is no order book, no queue position and
    no partial fill. A resting buy fills in full at its limit price on the first tick with
    ``price <= order.price``; a resting sell on ``price >= order.price``. Fills go straight
    into the ledger.
    """

    def __init__(
        self,
        ledger: PositionLedger,
        *,
        fee_rate: float = 0.0,
        now_fn: Optional[Callable[[], float]] = None,
    ):
        self.ledger = ledger
        self.fee_rate = float(fee_rate)
        self._now = now_fn or time.time
        self._orders: Dict[str, SimulatedOrder] = {}
        self._next_id = 1

        self.total_orders = 0
        self.total_filled = 0
        self.cancel_count = 0

    async def place_order(self, symbol: str, side: str, price: float, size: float, reduce_only: bool) -> str:
        if side not in SIDES:
            raise GatewayError(f"invalid side {side!r}", operation="place", retryable=False)
        if not size > 0 or not price > 0:
            raise GatewayError(f"invalid order {size}@{price}", operation="place", retryable=False)

        oid = f"sim_{self._next_id}"
        self._next_id += 1
        self._orders[oid] = SimulatedOrder(
            id=oid,
            side=side,
            price=float(price),
            size=float(size),
            reduce_only=bool(reduce_only),
            created_at=self._now(),
        )
        self.total_orders += 1
        logger.info("[模拟] 挂单: %s %s @ %.4f (reduce_only=%s)", side.upper(), size, price, reduce_only)
        return oid

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        if self._orders.pop(order_id, None) is None:
            raise GatewayError(f"order {order_id} not found", operation="cancel", retryable=False)
        self.cancel_count += 1

    async def cancel_all(self, symbol: str, side: Optional[str] = None) -> None:
        if side is None:
            self.cancel_count += len(self._orders)
            self._orders = {}
            return
        kept = {oid: o for oid, o in self._orders.items() if o.side != side}
        self.cancel_count += len(self._orders) - len(kept)
        self._orders = kept

    def tick(self, price: float) -> List[Fill]:
        """Match every resting order against ``price`` in a single pass."""
        fills: List[Fill] = []
        remaining: Dict[str, SimulatedOrder] = {}

        for oid, order in self._orders.items():
            crossed = (order.side == BUY and price <= order.price) or (
                order.side == SELL and price >= order.price
            )
            if not crossed:
                remaining[oid] = order
                continue

            fees_before = self.ledger.total_fees
            pnl = self.ledger.apply_fill(
                order.side, order.size, order.reduce_only,
                price=order.price, fee=order.price * order.size * self.fee_rate,
            )
            fee = self.ledger.total_fees - fees_before
            fills.append(
                Fill(
                    order_id=oid,
                    side=order.side,
                    price=order.price,
                    size=order.size,
                    reduce_only=order.reduce_only,
                    fee=fee,
                    realized_pnl=pnl,
                )
            )
            self.total_filled += 1
            action = ("买入平空" if order.side == BUY else "卖出平多") if order.reduce_only else (
                "买入开多" if order.side == BUY else "卖出开空"
            )
            log_success(logger, "[模拟成交] %s %s @ %.4f", action, order.size, order.price)

        self._orders = remaining
        return fills

    def open_orders(self) -> List[SimulatedOrder]:
        return list(self._orders.values())
