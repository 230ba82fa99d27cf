import asyncio

import pytest

from gate_mm.core.algo import Quote
from gate_mm.core.config import StrategyConfig, StrategyKind
from gate_mm.core.executor import OrderReconciliationManager
from gate_mm.core.ledger import LedgerSnapshot
from gate_mm.core.models import BUY, SELL, OrderUpdate
from gate_mm.sim.fakes import RecordingGateway

SYMBOL = "XRP_USDT"


def _config(**overrides) -> StrategyConfig:
    params = dict(
        strategy=StrategyKind.GRID,
        grid_spacing=0.006,
        take_profit_spacing=0.004,
        quantity=1,
        position_threshold=500,
    )
    params.update(overrides)
    return StrategyConfig(**params)


def _position(long_size=0.0, short_size=0.0) -> LedgerSnapshot:
    return LedgerSnapshot(long_size=long_size, short_size=short_size, realized_pnl=0.0, unrealized_pnl=0.0, balance=0.0)


QUOTE = Quote(reserve_price=100.0, target_bid=99.4, target_ask=100.6)


class TestReconcile:
    """先撤后挂：每个方向最多一张开仓单 + 一张止盈单"""

    @pytest.mark.asyncio
    async def test_flat_position_places_both_sides(self):
        gateway = RecordingGateway()
        manager = OrderReconciliationManager(gateway, _config())

        await manager.reconcile(100.0, QUOTE, _position())

        assert gateway.resting_set() == {
            (BUY, 99.4, 1.0, False),
            (SELL, 100.6, 1.0, False),
        }
        assert [c.op for c in gateway.calls] == ["cancel_all", "place", "cancel_all", "place"]
        assert [c.side for c in gateway.calls if c.op == "cancel_all"] == [BUY, SELL]
        assert manager.passes == 1
        assert len(manager.get_open_orders()) == 2

    @pytest.mark.asyncio
    async def test_threshold_blocks_opening_but_keeps_take_profit(self):
        """多头 600 > 阈值 500：不再挂开仓买单，止盈卖单覆盖全部 600"""
        gateway = RecordingGateway()
        manager = OrderReconciliationManager(gateway, _config())

        await manager.reconcile(100.0, QUOTE, _position(long_size=600))

        assert gateway.resting_set() == {
            (SELL, 100.6, 1.0, False),
            (SELL, 100.4, 600.0, True),
        }
        assert not [p for p in gateway.placements() if p.side == BUY]

    @pytest.mark.asyncio
    async def test_short_take_profit_below_price(self):
        gateway = RecordingGateway()
        manager = OrderReconciliationManager(gateway, _config())

        await manager.reconcile(100.0, QUOTE, _position(short_size=3))

        assert (BUY, 99.6, 3.0, True) in gateway.resting_set()
        assert (BUY, 99.4, 1.0, False) in gateway.resting_set()

    @pytest.mark.asyncio
    async def test_position_equal_to_threshold_still_quotes(self):
        gateway = RecordingGateway()
        manager = OrderReconciliationManager(gateway, _config(position_threshold=5))

        await manager.reconcile(100.0, QUOTE, _position(long_size=5))

        assert (BUY, 99.4, 1.0, False) in gateway.resting_set()

    @pytest.mark.asyncio
    async def test_repeated_pass_is_idempotent(self):
        gateway = RecordingGateway()
        manager = OrderReconciliationManager(gateway, _config())
        position = _position(long_size=2)

        await manager.reconcile(100.0, QUOTE, position)
        first = gateway.resting_set()
        await manager.reconcile(100.0, QUOTE, position)

        assert gateway.resting_set() == first
        assert len(gateway.open_orders()) == 3
        assert manager.passes == 2

    @pytest.mark.asyncio
    async def test_partial_failure_continues_other_side(self):
        gateway = RecordingGateway(fail_place_sides={BUY})
        manager = OrderReconciliationManager(gateway, _config())

        await manager.reconcile(100.0, QUOTE, _position())

        assert gateway.resting_set() == {(SELL, 100.6, 1.0, False)}
        assert manager.error_count == 1
        assert [o.side for o in manager.get_open_orders()] == [SELL]

    @pytest.mark.asyncio
    async def test_take_profit_failure_is_logged_not_raised(self):
        gateway = RecordingGateway(fail_reduce_only=True)
        manager = OrderReconciliationManager(gateway, _config())

        await manager.reconcile(100.0, QUOTE, _position(long_size=4, short_size=2))

        assert manager.error_count == 2
        assert all(not o.reduce_only for o in gateway.open_orders())

    @pytest.mark.asyncio
    async def test_cancel_failure_does_not_abort_pass(self):
        gateway = RecordingGateway(fail_cancel=True)
        manager = OrderReconciliationManager(gateway, _config())

        await manager.reconcile(100.0, QUOTE, _position())

        assert manager.error_count == 2
        assert len(gateway.placements()) == 2


class TestStoppedRun:
    """停止之后：迟到的回执丢弃，不再下新单"""

    @pytest.mark.asyncio
    async def test_late_confirmation_discarded(self):
        gateway = RecordingGateway(place_latency_s=0.05)
        manager = OrderReconciliationManager(gateway, _config())

        task = asyncio.create_task(manager.reconcile(100.0, QUOTE, _position()))
        await asyncio.sleep(0.01)
        manager.close()
        await task

        # 第一张单已经发出去了，回执到达时 run 已停止
        assert len(gateway.placements()) == 1
        assert manager.get_open_orders() == []
        assert manager.total_orders == 0

    @pytest.mark.asyncio
    async def test_closed_manager_is_inert(self):
        gateway = RecordingGateway()
        manager = OrderReconciliationManager(gateway, _config())
        manager.close()

        await manager.reconcile(100.0, QUOTE, _position(long_size=1))
        assert await manager.place(BUY, 99.0, 1, False) is None
        assert await manager.cancel_side(BUY) is False
        assert gateway.calls == []

    @pytest.mark.asyncio
    async def test_liquidate_after_close(self):
        gateway = RecordingGateway()
        manager = OrderReconciliationManager(gateway, _config())
        await manager.reconcile(100.0, QUOTE, _position())
        manager.close()

        await manager.liquidate(101.0, 3, 2)

        assert gateway.resting_set() == {
            (SELL, 101.0, 3.0, True),
            (BUY, 101.0, 2.0, True),
        }
        assert gateway.calls[-3].op == "cancel_all"
        assert gateway.calls[-3].side is None
        assert manager.get_open_orders() == []

    @pytest.mark.asyncio
    async def test_liquidate_flat_only_cancels(self):
        gateway = RecordingGateway()
        manager = OrderReconciliationManager(gateway, _config())
        await manager.reconcile(100.0, QUOTE, _position())

        await manager.liquidate(100.0, 0, 0)

        assert gateway.open_orders() == []
        assert len(gateway.placements()) == 2


class TestOrderPushes:
    def _update(self, oid="1", status="open", left=1.0, side=BUY):
        return OrderUpdate(id=oid, symbol=SYMBOL, side=side, price=99.0, left=left, status=status)

    def test_open_update_upserts(self):
        manager = OrderReconciliationManager(RecordingGateway(), _config())
        manager.on_order_update(self._update(left=2.0))
        manager.on_order_update(self._update(left=0.5))
        orders = manager.get_open_orders()
        assert len(orders) == 1
        assert orders[0].remaining_size == 0.5

    def test_finished_update_removes(self):
        manager = OrderReconciliationManager(RecordingGateway(), _config())
        manager.on_order_update(self._update())
        manager.on_order_update(self._update(status="finished", left=0.0))
        assert manager.get_open_orders() == []

    def test_untracked_manager_ignores_pushes(self):
        manager = OrderReconciliationManager(RecordingGateway(), _config(), track_orders=False)
        manager.on_order_update(self._update())
        assert manager.get_open_orders() == []

    def test_pushes_after_close_ignored(self):
        manager = OrderReconciliationManager(RecordingGateway(), _config())
        manager.close()
        manager.on_order_update(self._update())
        assert manager.get_open_orders() == []


@pytest.mark.asyncio
async def test_non_positive_size_skipped():
    gateway = RecordingGateway()
    manager = OrderReconciliationManager(gateway, _config())
    assert await manager.place(SELL, 101.0, 0, True) is None
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_statistics_and_history():
    gateway = RecordingGateway()
    manager = OrderReconciliationManager(gateway, _config())
    for _ in range(6):
        await manager.reconcile(100.0, QUOTE, _position())
    stats = manager.get_statistics()
    assert stats['passes'] == 6
    assert stats['total_orders'] == 12
    assert stats['open_orders'] == 2
    assert len(manager.order_history) == 10
