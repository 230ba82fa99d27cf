import asyncio
import logging
from functools import partial
from typing import Optional

import ccxt

from gate_mm.core.errors import GatewayError
from gate_mm.core.models import BUY, SIDES
from gate_mm.gateways.base import OrderGateway

logger = logging.getLogger(__name__)


def to_ccxt_symbol(contract: str) -> str:
    """``XRP_USDT`` -> ``XRP/USDT:USDT`` (ccxt linear swap symbol)."""
    base, _, quote = contract.partition("_")
    return f"{base}/{quote}:{quote}"


class GateOrderGateway(OrderGateway):
    """
    Gate.io USDT 永续下单通道

    基于 ccxt（同步客户端放到线程池执行，不阻塞事件循环）:
    1. initialize: 加载市场 + 设置杠杆
    2. 限价单 + reduceOnly
    3. 按方向批量撤单（Gate 的 side=bid/ask 过滤）
    任何 ccxt 异常都会被包装成 GatewayError
    """

    def __init__(
        self,
        api_key: str,
        api_secret: str,
        *,
        contract: Optional[str] = None,
        leverage: int = 20,
        exchange=None,
    ):
        if not exchange and (not api_key or not api_secret):
            raise GatewayError("❌ Missing Gate API Key for LIVE trading!", operation="init", retryable=False)

        self.contract = contract
        self.leverage = leverage
        self.exchange = exchange or ccxt.gate({
            'apiKey': api_key,
            'secret': api_secret,
            'enableRateLimit': True,  # 遵守限频
            'options': {'defaultType': 'swap'},
        })
        self.markets_loaded = False

    async def _call(self, operation: str, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        try:
            return await loop.run_in_executor(None, partial(fn, *args, **kwargs))
        except ccxt.BaseError as e:
            retryable = isinstance(e, ccxt.NetworkError)
            raise GatewayError(f"{operation} failed: {e}", operation=operation, retryable=retryable) from e

    async def initialize(self) -> None:
        """加载市场信息并设置杠杆"""
        logger.info("📡 Loading Gate markets...")
        await self._call("load_markets", self.exchange.load_markets)
        self.markets_loaded = True
        logger.info("✅ Loaded %s markets", len(self.exchange.symbols or []))
        if self.contract:
            await self.set_leverage(self.contract)

    async def set_leverage(self, contract: str) -> None:
        await self._call("set_leverage", self.exchange.set_leverage, self.leverage, to_ccxt_symbol(contract))
        logger.info("⚙️ Leverage set to %sx for %s", self.leverage, contract)

    async def place_order(self, symbol: str, side: str, price: float, size: float, reduce_only: bool) -> str:
        if side not in SIDES:
            raise GatewayError(f"invalid side {side!r}", operation="place", retryable=False)
        if not self.markets_loaded:
            await self.initialize()

        market_symbol = to_ccxt_symbol(symbol)
        amount = self.exchange.amount_to_precision(market_symbol, size)
        limit_price = self.exchange.price_to_precision(market_symbol, price)
        params = {'reduceOnly': True} if reduce_only else {}

        order = await self._call(
            "place",
            self.exchange.create_order,
            market_symbol, 'limit', side, amount, limit_price, params,
        )
        return str(order['id'])

    async def cancel_order(self, order_id: str, symbol: str) -> None:
        await self._call("cancel", self.exchange.cancel_order, order_id, to_ccxt_symbol(symbol))

    async def cancel_all(self, symbol: str, side: Optional[str] = None) -> None:
        params = {}
        if side is not None:
            # Gate: bid = 买单, ask = 卖单
            params['side'] = 'bid' if side == BUY else 'ask'
        await self._call("cancel_all", self.exchange.cancel_all_orders, to_ccxt_symbol(symbol), params)

    async def close(self) -> None:
        # 同步 ccxt 客户端没有需要释放的会话
        self.markets_loaded = False
