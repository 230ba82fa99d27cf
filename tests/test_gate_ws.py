import asyncio
import hashlib
import hmac
import json

import pytest

from gate_mm.core.errors import FeedError
from gate_mm.core.models import BUY, SELL, BalanceUpdate, OrderUpdate, PositionUpdate, Tick
from gate_mm.gateways.gate_ws import GateFuturesFeed


def _update(channel, result):
    return json.dumps({"time": 1700000000, "channel": channel, "event": "update", "result": result})


@pytest.fixture
def feed():
    return GateFuturesFeed("XRP_USDT")


class TestParseMessage:
    """Gate futures 推送解析"""

    def test_ticker(self, feed):
        raw = _update("futures.tickers", [
            {"contract": "XRP_USDT", "last": "0.5123", "highest_bid": "0.5122", "lowest_ask": "0.5124"},
        ])
        (tick,) = feed.parse_message(raw)
        assert isinstance(tick, Tick)
        assert tick.last_price == pytest.approx(0.5123)
        assert tick.best_bid == pytest.approx(0.5122)
        assert tick.best_ask == pytest.approx(0.5124)

    def test_ticker_short_keys(self, feed):
        raw = _update("futures.tickers", {"contract": "XRP_USDT", "last": "1.5", "b": "1.49", "a": "1.51"})
        (tick,) = feed.parse_message(raw)
        assert tick.best_bid == pytest.approx(1.49)
        assert tick.best_ask == pytest.approx(1.51)

    def test_ticker_for_other_contract_ignored(self, feed):
        raw = _update("futures.tickers", [{"contract": "BTC_USDT", "last": "65000"}])
        assert feed.parse_message(raw) == []

    def test_order(self, feed):
        raw = _update("futures.orders", [
            {"contract": "XRP_USDT", "id": 123, "size": -10, "left": -4, "price": "0.52", "status": "open",
             "is_reduce_only": True},
        ])
        (order,) = feed.parse_message(raw)
        assert isinstance(order, OrderUpdate)
        assert order.id == "123"
        assert order.side == SELL
        assert order.left == 4
        assert order.reduce_only is True
        assert order.is_open

    def test_finished_order(self, feed):
        raw = _update("futures.orders", [
            {"contract": "XRP_USDT", "id": "9", "size": 3, "left": 0, "price": "0.5", "status": "finished"},
        ])
        (order,) = feed.parse_message(raw)
        assert order.side == BUY
        assert not order.is_open

    def test_single_mode_position(self, feed):
        raw = _update("futures.positions", [
            {"contract": "XRP_USDT", "size": -7, "mode": "single", "unrealised_pnl": "1.25", "realised_pnl": "-0.1"},
        ])
        (pos,) = feed.parse_message(raw)
        assert isinstance(pos, PositionUpdate)
        assert pos.long_size == 0
        assert pos.short_size == 7
        assert pos.unrealized_pnl == pytest.approx(1.25)
        assert pos.realized_pnl == pytest.approx(-0.1)

    @pytest.mark.parametrize("mode,size,expected", [
        ("dual_long", 5, (5.0, None)),
        ("dual_short", -3, (None, 3.0)),
    ])
    def test_dual_mode_position_covers_one_side(self, feed, mode, size, expected):
        raw = _update("futures.positions", [{"contract": "XRP_USDT", "size": size, "mode": mode}])
        (pos,) = feed.parse_message(raw)
        assert (pos.long_size, pos.short_size) == expected

    def test_balance(self, feed):
        raw = _update("futures.balances", [{"balance": "123.45", "currency": "USDT", "change": "1"}])
        (bal,) = feed.parse_message(raw)
        assert bal == BalanceUpdate(currency="USDT", balance=123.45)

    def test_control_messages_ignored(self, feed):
        assert feed.parse_message(json.dumps({"channel": "futures.pong", "result": None})) == []
        ack = {"channel": "futures.tickers", "event": "subscribe", "result": {"status": "success"}}
        assert feed.parse_message(json.dumps(ack)) == []

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2]",
        _update("futures.tickers", None),
        _update("futures.tickers", [{"contract": "XRP_USDT", "last": "abc"}]),
        _update("futures.tickers", [{"contract": "XRP_USDT", "last": "0"}]),
        _update("futures.orders", [{"contract": "XRP_USDT", "size": 1}]),
        _update("futures.positions", [{"contract": "XRP_USDT", "mode": "single"}]),
        _update("futures.balances", ["oops"]),
    ])
    def test_malformed_raises(self, feed, raw):
        with pytest.raises(FeedError):
            feed.parse_message(raw)


class TestDispatch:
    @pytest.mark.asyncio
    async def test_malformed_message_dropped_and_feed_continues(self, feed):
        ticks = []

        async def on_tick(tick):
            ticks.append(tick.last_price)

        feed.on_tick = on_tick
        await feed.handle_message("{broken")
        await feed.handle_message(_update("futures.tickers", [{"contract": "XRP_USDT", "last": "0.6"}]))

        assert feed.dropped_messages == 1
        assert ticks == [0.6]

    @pytest.mark.asyncio
    async def test_events_dispatched_in_order(self, feed):
        seen = []

        async def record(event):
            seen.append(event)

        feed.on_tick = record
        await feed.handle_message(_update("futures.tickers", [
            {"contract": "XRP_USDT", "last": "1"},
            {"contract": "XRP_USDT", "last": "2"},
        ]))
        assert [t.last_price for t in seen] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_handler_error_does_not_propagate(self, feed):
        async def boom(event):
            raise RuntimeError("handler failed")

        feed.on_balance = boom
        await feed.handle_message(_update("futures.balances", [{"balance": "1", "currency": "USDT"}]))

    @pytest.mark.asyncio
    async def test_missing_handler_is_skipped(self, feed):
        await feed.handle_message(_update("futures.orders", [
            {"contract": "XRP_USDT", "id": 1, "size": 1, "left": 1, "price": "1", "status": "open"},
        ]))


class TestSubscribe:
    def test_public_only_without_credentials(self, feed):
        messages = feed.subscribe_messages(now=1700000000)
        assert messages == [
            {"time": 1700000000, "channel": "futures.tickers", "event": "subscribe", "payload": ["XRP_USDT"]},
        ]

    def test_private_channels_signed(self):
        feed = GateFuturesFeed("XRP_USDT", api_key="key", api_secret="secret")
        messages = feed.subscribe_messages(now=1700000000)
        channels = [m["channel"] for m in messages]
        assert channels == ["futures.tickers", "futures.orders", "futures.positions", "futures.balances"]

        orders = messages[1]
        expected = hmac.new(
            b"secret", b"channel=futures.orders&event=subscribe&time=1700000000", hashlib.sha512
        ).hexdigest()
        assert orders["auth"] == {"method": "api_key", "KEY": "key", "SIGN": expected}
        assert messages[3]["payload"] == ["USDT"]

    @pytest.mark.asyncio
    async def test_close_before_connect(self, feed):
        await feed.close()
        assert feed.running is False


class TestReconnect:
    """连接循环：握手超时也按断线处理并重连"""

    @pytest.mark.asyncio
    async def test_connect_timeout_retries(self, monkeypatch):
        feed = GateFuturesFeed("XRP_USDT", reconnect_delay=0)
        attempts = 0

        def fake_connect(*args, **kwargs):
            nonlocal attempts
            attempts += 1
            if attempts == 2:
                feed.running = False
            raise asyncio.TimeoutError("handshake timed out")

        monkeypatch.setattr("gate_mm.gateways.gate_ws.websockets.connect", fake_connect)
        await asyncio.wait_for(feed.connect(), 1.0)

        assert attempts == 2
        assert feed.reconnects == 1
        assert feed.ws is None
