import logging
import time
from collections import deque
from typing import Dict, List, Optional

from gate_mm.core.algo import Quote
from gate_mm.core.config import StrategyConfig
from gate_mm.core.errors import GatewayError
from gate_mm.core.ledger import LedgerSnapshot
from gate_mm.core.models import BUY, SELL, OpenOrder, OrderUpdate
from gate_mm.gateways.base import OrderGateway
from gate_mm.utils.logging import log_success

logger = logging.getLogger(__name__)


class OrderReconciliationManager:
    """
    订单调和器 (Cancel-then-Place Reconciliation)

    每个调和周期、每个方向独立处理:
    1. 该方向持仓超过 position_threshold -> 撤掉该方向所有挂单，不再开新仓
    2. 否则撤掉该方向所有挂单，在目标价重新挂一张 quantity 的开仓单
    3. 有多头 -> 在 price*(1+tp) 挂满仓位的 reduce-only 卖单；空头对称

    先撤后挂保证任一方向最多只有一张开仓单和一张平仓单。
    每次网关调用各自独立失败：记录错误后继续后面的步骤，下个周期即为重试。

    一个实例只服务一次运行（run）。``close()`` 之后迟到的下单回执只记录日志，
    不再写入 OpenOrder 缓存。
    """

    def __init__(self, gateway: OrderGateway, config: StrategyConfig, *, track_orders: bool = True):
        self.gateway = gateway
        self.config = config
        self.symbol = config.contract
        self.track_orders = track_orders
        self.active = True

        # 实盘挂单缓存 {order_id: OpenOrder}，最终一致，以交易所为准
        self.open_orders: Dict[str, OpenOrder] = {}

        self.passes = 0
        self.total_orders = 0
        self.error_count = 0
        self.order_history = deque(maxlen=10)

    def close(self) -> None:
        self.active = False
        self.open_orders.clear()

    async def reconcile(self, price: float, quote: Quote, position: LedgerSnapshot) -> None:
        """Converge resting orders to the quote for one throttle window."""
        if not self.active:
            return
        self.passes += 1
        cfg = self.config

        for side, held, target in (
            (BUY, position.long_size, quote.target_bid),
            (SELL, position.short_size, quote.target_ask),
        ):
            await self.cancel_side(side)
            if held > cfg.position_threshold:
                logger.warning(
                    "⚠️ %s 持仓 %.4f 超过阈值 %.4f，暂停 %s 方向开仓",
                    "多头" if side == BUY else "空头", held, cfg.position_threshold, side.upper(),
                )
                continue
            await self.place(side, target, cfg.quantity, reduce_only=False)

        # 止盈单每个周期按当前完整仓位重挂
        if position.long_size > 0:
            await self.place(SELL, price * (1 + cfg.take_profit_spacing), position.long_size, reduce_only=True)
        if position.short_size > 0:
            await self.place(BUY, price * (1 - cfg.take_profit_spacing), position.short_size, reduce_only=True)

    async def place(self, side: str, price: float, size: float, reduce_only: bool) -> Optional[str]:
        if not self.active:
            return None
        return await self._submit(side, price, size, reduce_only, record=True)

    async def _submit(self, side: str, price: float, size: float, reduce_only: bool, *, record: bool) -> Optional[str]:
        if not size > 0:
            logger.warning("⚠️ Skip %s order with non-positive size %s", side, size)
            return None

        try:
            order_id = await self.gateway.place_order(self.symbol, side, price, size, reduce_only)
        except GatewayError as e:
            self.error_count += 1
            logger.error("❌ 下单失败 %s %s @ %.4f (reduce_only=%s): %s", side.upper(), size, price, reduce_only, e)
            return None

        if record and not self.active:
            logger.info("🗑️ Late confirmation for stopped run discarded: %s %s", side, order_id)
            return None

        self.total_orders += 1
        self.order_history.append({
            'time': time.time(),
            'id': order_id,
            'side': side,
            'price': price,
            'size': size,
            'reduce_only': reduce_only,
        })
        if record and self.track_orders:
            self.open_orders[order_id] = OpenOrder(
                id=order_id,
                price=price,
                remaining_size=size,
                side=side,
                reduce_only=reduce_only,
            )
            log_success(logger, "✅ 挂单成功: %s %s @ %.4f (reduce_only=%s)", side.upper(), size, price, reduce_only)
        return order_id

    async def cancel_side(self, side: str) -> bool:
        if not self.active:
            return False
        try:
            await self.gateway.cancel_all(self.symbol, side)
        except GatewayError as e:
            self.error_count += 1
            logger.error("❌ 撤单失败 (%s): %s", side, e)
            return False
        self._forget(lambda o: o.side == side)
        return True

    async def cancel_everything(self) -> bool:
        """Cancel every resting order for the symbol, regardless of run state."""
        try:
            await self.gateway.cancel_all(self.symbol)
        except GatewayError as e:
            self.error_count += 1
            logger.error("❌ 撤销全部挂单失败: %s", e)
            return False
        self.open_orders.clear()
        logger.info("📋 已撤销所有挂单")
        return True

    async def liquidate(self, price: float, long_size: float, short_size: float) -> None:
        """Stop sequence: cancel everything, then reduce-only close both sides at ``price``."""
        await self.cancel_everything()
        if long_size > 0:
            logger.info("📈 平仓多头仓位: %s 张", long_size)
            await self._submit(SELL, price, long_size, True, record=False)
        if short_size > 0:
            logger.info("📉 平仓空头仓位: %s 张", short_size)
            await self._submit(BUY, price, short_size, True, record=False)

    def on_order_update(self, update: OrderUpdate) -> None:
        """Apply a private order push to the cache."""
        if not self.active:
            logger.debug("Order update %s for stopped run ignored", update.id)
            return
        if not self.track_orders:
            return
        if update.is_open:
            self.open_orders[update.id] = OpenOrder(
                id=update.id,
                price=update.price,
                remaining_size=update.left,
                side=update.side,
                reduce_only=update.reduce_only,
            )
        else:
            self.open_orders.pop(update.id, None)

    def _forget(self, predicate) -> None:
        self.open_orders = {oid: o for oid, o in self.open_orders.items() if not predicate(o)}

    def get_open_orders(self) -> List[OpenOrder]:
        return list(self.open_orders.values())

    def get_statistics(self) -> Dict:
        return {
            'passes': self.passes,
            'total_orders': self.total_orders,
            'errors': self.error_count,
            'open_orders': len(self.open_orders),
        }
