import asyncio
import json
import logging
import time
from typing import List, Optional, Union

import websockets

from gate_mm.core.errors import FeedError
from gate_mm.core.models import BUY, SELL, BalanceUpdate, OrderUpdate, PositionUpdate, Tick
from gate_mm.gateways.auth import sign_ws_auth
from gate_mm.gateways.base import MarketFeed

logger = logging.getLogger(__name__)

Event = Union[Tick, OrderUpdate, PositionUpdate, BalanceUpdate]

TICKERS = "futures.tickers"
ORDERS = "futures.orders"
POSITIONS = "futures.positions"
BALANCES = "futures.balances"
PRIVATE_CHANNELS = (ORDERS, POSITIONS, BALANCES)


def _num(payload: dict, *keys: str, default: Optional[float] = None) -> Optional[float]:
    for key in keys:
        value = payload.get(key)
        if value is None or value == "":
            continue
        try:
            return float(value)
        except (TypeError, ValueError) as e:
            raise FeedError(f"field {key!r} is not numeric: {value!r}", raw=payload) from e
    return default


class GateFuturesFeed(MarketFeed):
    """
    Gate.io USDT 永续 WebSocket 行情 / 私有推送

    功能:
    1. 订阅 futures.tickers（公共）
    2. 有 API Key 时订阅 futures.orders / positions / balances（私有，HMAC 鉴权）
    3. 断线自动重连；单条坏消息丢弃，连接保持
    """

    WS_URL = "wss://fx-ws.gateio.ws/v4/ws/usdt"

    def __init__(
        self,
        contract: str,
        *,
        api_key: Optional[str] = None,
        api_secret: Optional[str] = None,
        url: Optional[str] = None,
        reconnect_delay: float = 2.0,
    ):
        self.contract = contract
        self.api_key = api_key
        self.api_secret = api_secret
        self.url = url or self.WS_URL
        self.reconnect_delay = reconnect_delay

        self.running = False
        self.ws = None
        self.reconnects = 0
        self.dropped_messages = 0
        self.last_message_ts = 0.0

    @property
    def private(self) -> bool:
        return bool(self.api_key) and bool(self.api_secret)

    async def connect(self) -> None:
        """连接循环：直到 close() 之前断线都会重连。"""
        self.running = True
        while self.running:
            try:
                logger.info("🔗 Connecting to %s ...", self.url)
                async with websockets.connect(self.url, ping_interval=20, close_timeout=5) as ws:
                    self.ws = ws
                    logger.info("✅ Gate WebSocket Connected (%s)", self.contract)
                    await self._subscribe()
                    async for raw in ws:
                        if not self.running:
                            break
                        await self.handle_message(raw)
            except asyncio.CancelledError:
                raise
            except (websockets.exceptions.WebSocketException, OSError, asyncio.TimeoutError) as e:
                if not self.running:
                    break
                self.reconnects += 1
                logger.warning("⚠️ WS Error (will reconnect in %.1fs): %s", self.reconnect_delay, e)
            finally:
                self.ws = None

            if self.running:
                await asyncio.sleep(self.reconnect_delay)

        logger.info("🔌 Gate WebSocket stopped")

    async def close(self) -> None:
        self.running = False
        ws = self.ws
        if ws is not None:
            await ws.close()

    def subscribe_messages(self, now: Optional[int] = None) -> List[dict]:
        t = int(now if now is not None else time.time())
        messages = [{"time": t, "channel": TICKERS, "event": "subscribe", "payload": [self.contract]}]
        if not self.private:
            return messages
        for channel in PRIVATE_CHANNELS:
            payload = ["USDT"] if channel == BALANCES else [self.contract]
            messages.append({
                "time": t,
                "channel": channel,
                "event": "subscribe",
                "payload": payload,
                "auth": sign_ws_auth(self.api_key, self.api_secret, channel, "subscribe", t),
            })
        return messages

    async def _subscribe(self) -> None:
        for msg in self.subscribe_messages():
            await self.ws.send(json.dumps(msg))
        logger.info("📡 Subscribed to %s%s", self.contract, " (+private channels)" if self.private else "")

    async def handle_message(self, raw) -> None:
        """Parse one frame and dispatch its events in arrival order."""
        self.last_message_ts = time.time()
        try:
            events = self.parse_message(raw)
        except FeedError as e:
            self.dropped_messages += 1
            logger.warning("⚠️ Malformed feed message dropped: %s", e)
            return

        for event in events:
            handler = self._handler_for(event)
            if handler is None:
                continue
            try:
                await handler(event)
            except Exception as e:
                logger.error("❌ Feed handler error for %s: %s", type(event).__name__, e, exc_info=True)

    def _handler_for(self, event: Event):
        if isinstance(event, Tick):
            return self.on_tick
        if isinstance(event, OrderUpdate):
            return self.on_order
        if isinstance(event, PositionUpdate):
            return self.on_position
        return self.on_balance

    def parse_message(self, raw) -> List[Event]:
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            raise FeedError(f"invalid JSON: {e}", raw=raw) from e
        if not isinstance(data, dict):
            raise FeedError("message is not an object", raw=raw)

        channel = data.get("channel")
        event = data.get("event")
        if channel == "futures.pong":
            return []
        if event == "subscribe":
            if data.get("error"):
                logger.error("❌ Subscribe %s failed: %s", channel, data["error"])
            else:
                logger.info("📡 Subscribe %s confirmed", channel)
            return []
        if event != "update":
            return []

        result = data.get("result")
        if result is None:
            raise FeedError(f"{channel} update without result", raw=raw)
        items = result if isinstance(result, list) else [result]
        for item in items:
            if not isinstance(item, dict):
                raise FeedError(f"{channel} item is not an object", raw=raw)

        if channel == TICKERS:
            return [t for t in (self._parse_ticker(i) for i in items) if t is not None]
        if channel == ORDERS:
            return [o for o in (self._parse_order(i) for i in items) if o is not None]
        if channel == POSITIONS:
            return [p for p in (self._parse_position(i) for i in items) if p is not None]
        if channel == BALANCES:
            return [self._parse_balance(i) for i in items]
        return []

    def _matches(self, item: dict) -> bool:
        contract = item.get("contract")
        return contract is None or contract == self.contract

    def _parse_ticker(self, item: dict) -> Optional[Tick]:
        if not self._matches(item):
            return None
        last = _num(item, "last")
        if last is None or last <= 0:
            raise FeedError(f"ticker without a usable last price: {item.get('last')!r}", raw=item)
        return Tick(
            symbol=self.contract,
            last_price=last,
            best_bid=_num(item, "highest_bid", "b", default=0.0),
            best_ask=_num(item, "lowest_ask", "a", default=0.0),
            ts=time.time(),
        )

    def _parse_order(self, item: dict) -> Optional[OrderUpdate]:
        if not self._matches(item):
            return None
        if item.get("id") is None:
            raise FeedError("order update without id", raw=item)
        size = _num(item, "size", default=0.0)
        return OrderUpdate(
            id=str(item["id"]),
            symbol=self.contract,
            side=BUY if size > 0 else SELL,
            price=_num(item, "price", default=0.0),
            left=abs(_num(item, "left", default=0.0)),
            status=str(item.get("status", "")),
            reduce_only=bool(item.get("is_reduce_only", False)),
        )

    def _parse_position(self, item: dict) -> Optional[PositionUpdate]:
        if not self._matches(item):
            return None
        size = _num(item, "size")
        if size is None:
            raise FeedError("position update without size", raw=item)
        mode = item.get("mode", "single")
        unrealized = _num(item, "unrealised_pnl", default=0.0)
        realized = _num(item, "realised_pnl")

        # 双向持仓模式下每条消息只覆盖一侧
        if mode == "dual_long":
            long_size, short_size = abs(size), None
        elif mode == "dual_short":
            long_size, short_size = None, abs(size)
        else:
            long_size, short_size = max(size, 0.0), max(-size, 0.0)

        return PositionUpdate(
            symbol=self.contract,
            long_size=long_size,
            short_size=short_size,
            unrealized_pnl=unrealized,
            realized_pnl=realized,
        )

    def _parse_balance(self, item: dict) -> BalanceUpdate:
        balance = _num(item, "balance")
        if balance is None:
            raise FeedError("balance update without balance", raw=item)
        return BalanceUpdate(currency=str(item.get("currency", "USDT")), balance=balance)
