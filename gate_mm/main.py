import argparse
import asyncio
import logging
import signal
import time
from collections import deque
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Optional

from gate_mm.core.algo import Quote, compute_quote, estimate_sigma
from gate_mm.core.config import (
    RESTART_COOLDOWN_S,
    STRATEGY_THROTTLE_S,
    StrategyConfig,
    load_config,
)
from gate_mm.core.errors import ConfigError, GatewayError
from gate_mm.core.executor import OrderReconciliationManager
from gate_mm.core.guardian import ProfitTargetGuardian
from gate_mm.core.ledger import PositionLedger
from gate_mm.core.models import BalanceUpdate, ChartPoint, OrderUpdate, PositionUpdate, Tick
from gate_mm.gateways.base import MarketFeed, OrderGateway
from gate_mm.sim.matching import SimulatedMatchingEngine
from gate_mm.utils.logging import LogBuffer, log_success, setup_logger

logger = logging.getLogger(__name__)

CHART_POINTS = 100


class SessionState(str, Enum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"


def default_feed_factory(config: StrategyConfig) -> MarketFeed:
    from gate_mm.gateways.gate_ws import GateFuturesFeed

    private = not config.simulation and config.has_credentials
    return GateFuturesFeed(
        config.contract,
        api_key=config.api_key if private else None,
        api_secret=config.api_secret if private else None,
    )


class StrategySession:
    """
    做市策略会话 (Strategy Session)

    架构:
    [Feed] --(tick)--> [Matching Engine (模拟盘)] --> [Ledger]
                                                        |
                             (每 10s 节流) [Quote Model] -> [Reconciliation Manager] -> [Gateway]
                                                        |
                             (每个 tick) [Profit-Target Guardian] -> 清仓 / 延迟重启

    状态机只有 IDLE / RUNNING 两态。所有账本与挂单状态都在单个事件循环里修改，
    网关调用放到后台任务，慢响应不会阻塞下一条行情。
    """

    def __init__(
        self,
        config: StrategyConfig,
        *,
        gateway: Optional[OrderGateway] = None,
        feed_factory: Optional[Callable[[StrategyConfig], MarketFeed]] = None,
        now_fn: Optional[Callable[[], float]] = None,
        throttle_s: float = STRATEGY_THROTTLE_S,
        restart_cooldown_s: float = RESTART_COOLDOWN_S,
        log_buffer: Optional[LogBuffer] = None,
    ):
        self.config = config
        self._staged: Optional[StrategyConfig] = None
        self.state = SessionState.IDLE
        self._now = now_fn or time.time
        self.throttle_s = throttle_s
        self.restart_cooldown_s = restart_cooldown_s
        self.log_buffer = log_buffer

        # 账本只在进程启动时创建一次，重启不清零
        self.ledger = PositionLedger(balance=config.initial_balance if config.simulation else 0.0)

        self.matching: Optional[SimulatedMatchingEngine] = None
        self.gateway: Optional[OrderGateway] = gateway
        self._gateway_injected = gateway is not None
        if gateway is None and config.simulation:
            self.gateway = self._build_matching(config)
        elif isinstance(gateway, SimulatedMatchingEngine):
            self.matching = gateway
        self._gateway_ready = False

        self._feed_factory = feed_factory or default_feed_factory
        self.feed: Optional[MarketFeed] = None
        self._feed_task: Optional[asyncio.Task] = None

        self.manager: Optional[OrderReconciliationManager] = None
        self.guardian = ProfitTargetGuardian(config.enable_profit_target, config.profit_target)

        # 行情与报价（仅展示）
        self.current_price = 0.0
        self.best_bid = 0.0
        self.best_ask = 0.0
        self.quote: Optional[Quote] = None
        self.chart: deque = deque(maxlen=CHART_POINTS)

        self.run_id = 0
        self.start_time: Optional[float] = None
        self._last_reconcile: Optional[float] = None
        self._manual_stop = False
        self._starting = False
        self._reconcile_task: Optional[asyncio.Task] = None
        self._stop_task: Optional[asyncio.Task] = None
        self._restart_task: Optional[asyncio.Task] = None
        self._live_upnl = {'long': 0.0, 'short': 0.0}
        self._live_rpnl = {'long': 0.0, 'short': 0.0}

    @property
    def running(self) -> bool:
        return self.state == SessionState.RUNNING

    @property
    def pending_restart(self) -> Optional[asyncio.Task]:
        task = self._restart_task
        return task if task is not None and not task.done() else None

    # ------------------------------------------------------------------ lifecycle

    def stage_config(self, config: StrategyConfig) -> None:
        """暂存新配置：只在下次 start() 时生效。"""
        self._staged = config
        if self.running:
            logger.info("📝 New config staged, applied on next start: %s", config.describe())

    async def start(self) -> bool:
        """
        IDLE -> RUNNING

        Raises:
            ConfigError: 实盘缺少 API Key 等，运行保持 IDLE
        """
        self._cancel_restart()
        if self.running or self._starting:
            logger.warning("⚠️ Strategy already running")
            return False

        if self._staged is not None:
            self.config = self._staged
            self._staged = None
            self.guardian = ProfitTargetGuardian(self.config.enable_profit_target, self.config.profit_target)

        cfg = self.config
        try:
            cfg.ensure_startable()
        except ConfigError as e:
            logger.error("❌ 无法启动: %s", e)
            raise

        # 下面有 await：启动过程中再次 start() 直接返回
        self._starting = True
        try:
            # 上一轮的撤单/平仓序列结束之前不开始新一轮
            if self._stop_task is not None and not self._stop_task.done():
                logger.info("⏳ Waiting for previous stop sequence...")
                await asyncio.wait([self._stop_task])

            try:
                gateway = await self._ensure_gateway(cfg)
            except GatewayError as e:
                logger.error("❌ Gateway init failed: %s", e)
                return False
        finally:
            self._starting = False

        if self.running:
            logger.warning("⚠️ Strategy already running")
            return False

        self._manual_stop = False
        self.run_id += 1
        self.manager = OrderReconciliationManager(gateway, cfg, track_orders=not cfg.simulation)
        self.guardian.arm(self.ledger.total_pnl())
        self._last_reconcile = None
        self.start_time = self._now()
        self.state = SessionState.RUNNING

        self._open_feed(cfg)
        log_success(logger, "🚀 策略启动 #%s: %s", self.run_id, cfg.describe())
        return True

    async def stop(self) -> None:
        """手动停止：取消待执行的重启，撤销挂单，关闭行情。"""
        self._manual_stop = True
        self._cancel_restart()
        if self.running:
            logger.info("🛑 策略手动停止")
            self._halt(liquidate=False)
        elif self._feed_task is not None:
            await self._close_feed()
        if self._stop_task is not None and not self._stop_task.done():
            await asyncio.wait([self._stop_task])

    async def shutdown(self) -> None:
        await self.stop()
        await self.drain()
        if self.gateway is not None:
            await self.gateway.close()
        logger.info("✅ Session stopped.")

    async def drain(self) -> None:
        """Wait for the in-flight reconcile pass and stop sequence (not the restart timer)."""
        pending = [t for t in (self._reconcile_task, self._stop_task) if t is not None and not t.done()]
        if pending:
            await asyncio.wait(pending)

    def _build_matching(self, cfg: StrategyConfig) -> SimulatedMatchingEngine:
        self.matching = SimulatedMatchingEngine(self.ledger, fee_rate=cfg.taker_fee, now_fn=self._now)
        return self.matching

    async def _ensure_gateway(self, cfg: StrategyConfig) -> OrderGateway:
        # 注入的网关（测试 / 回放）原样使用
        if self._gateway_injected:
            live_needed = False
        elif cfg.simulation:
            live_needed = False
            if not isinstance(self.gateway, SimulatedMatchingEngine):
                self.gateway = self.matching or self._build_matching(cfg)
                self._gateway_ready = False
        else:
            live_needed = self.gateway is None or isinstance(self.gateway, SimulatedMatchingEngine)

        if live_needed:
            from gate_mm.gateways.gate_rest import GateOrderGateway

            logger.warning("⚠️ LIVE TRADING ENABLED! (%s)", cfg.contract)
            self.gateway = GateOrderGateway(
                cfg.api_key,
                cfg.api_secret,
                contract=cfg.contract,
                leverage=cfg.leverage,
            )
            self._gateway_ready = False

        if not self._gateway_ready:
            await self.gateway.initialize()
            self._gateway_ready = True
        return self.gateway

    def _open_feed(self, cfg: StrategyConfig) -> None:
        feed = self._feed_factory(cfg)
        feed.on_tick = self.on_tick
        feed.on_order = self.on_order
        feed.on_position = self.on_position
        feed.on_balance = self.on_balance
        self.feed = feed
        self._feed_task = self._spawn(feed.connect(), "feed")

    async def _close_feed(self) -> None:
        feed, task = self.feed, self._feed_task
        self.feed, self._feed_task = None, None
        if feed is not None:
            await feed.close()
        if task is not None and not task.done():
            done, _ = await asyncio.wait([task], timeout=5.0)
            if not done:
                task.cancel()

    def _halt(self, *, liquidate: bool) -> None:
        """RUNNING -> IDLE，并在后台执行撤单（可选平仓）序列。"""
        self.state = SessionState.IDLE
        self.guardian.disarm()
        manager = self.manager
        if manager is not None:
            manager.close()
        self._stop_task = self._spawn(
            self._stop_sequence(manager, self._reconcile_task, liquidate, self.run_id),
            "stop",
        )

    async def _stop_sequence(self, manager, reconcile_task, liquidate: bool, run_id: int) -> None:
        # 正在执行的调和先跑完（它会在下一步前发现已关闭），否则可能留下孤儿挂单
        if reconcile_task is not None and not reconcile_task.done():
            await asyncio.wait([reconcile_task])
        await self._close_feed()
        if manager is None:
            return
        if liquidate:
            await manager.liquidate(self.current_price, self.ledger.long_size, self.ledger.short_size)
        else:
            await manager.cancel_everything()
        logger.info("⏹️ Stop sequence for run #%s finished", run_id)

    def _cancel_restart(self) -> None:
        task = self._restart_task
        self._restart_task = None
        if task is not None and not task.done():
            task.cancel()
            logger.info("🚫 Pending auto-restart cancelled")

    async def _restart_after_cooldown(self) -> None:
        logger.info("⏳ %.0f 秒后自动重启...", self.restart_cooldown_s)
        await asyncio.sleep(self.restart_cooldown_s)
        if self._stop_task is not None and not self._stop_task.done():
            await asyncio.wait([self._stop_task])
        if self._manual_stop or self.running:
            logger.info("⏭️ Auto-restart skipped (strategy stopped or already running)")
            return
        # 自己不能被 start() 取消
        self._restart_task = None
        logger.info("🔄 Auto-restarting strategy")
        await self.start()

    # ------------------------------------------------------------------ events

    async def on_tick(self, tick: Tick) -> None:
        await self.on_price(tick.last_price, tick.best_bid, tick.best_ask)

    async def on_price(self, price: float, best_bid: float = 0.0, best_ask: float = 0.0) -> None:
        """
        单条行情处理流水线:
        1. 模拟盘撮合 -> 账本
        2. 节流窗口到期 -> 报价 + 后台调和
        3. 盈利目标检查（不节流）
        """
        if not price > 0:
            logger.warning("⚠️ Ignoring non-positive price %s", price)
            return
        self.current_price = price
        if best_bid:
            self.best_bid = best_bid
        if best_ask:
            self.best_ask = best_ask

        if self.running:
            cfg = self.config
            if cfg.simulation and self.matching is not None:
                self.matching.tick(price)
                self.ledger.mark_to_market(price)
            self._maybe_reconcile(price)

        self._record_chart(price)

        if self.running:
            self._check_guardian()

    def _maybe_reconcile(self, price: float) -> None:
        now = self._now()
        if self._last_reconcile is not None and now - self._last_reconcile < self.throttle_s:
            return
        if self._reconcile_task is not None and not self._reconcile_task.done():
            logger.debug("Reconcile pass still in flight, skipping")
            return

        snapshot = self.ledger.snapshot()
        try:
            quote = compute_quote(price, snapshot.net_inventory, self.config)
        except ValueError as e:
            logger.error("❌ Quote failed: %s", e)
            return

        self._last_reconcile = now
        self.quote = quote
        logger.info(
            "📊 %s | Px: %.4f | Inv: %.4f | R: %.4f | Qt: %.4f/%.4f",
            self.config.contract, price, snapshot.net_inventory,
            quote.reserve_price, quote.target_bid, quote.target_ask,
        )
        self._reconcile_task = self._spawn(self.manager.reconcile(price, quote, snapshot), "reconcile")

    def _check_guardian(self) -> None:
        if not self.guardian.check(self.ledger.total_pnl()):
            return
        logger.warning("💰 平仓并停止策略 (%s)", self.guardian.last_trigger_reason)
        self._halt(liquidate=True)
        if self.config.auto_restart:
            self._restart_task = self._spawn(self._restart_after_cooldown(), "restart")

    def _record_chart(self, price: float) -> None:
        q = self.quote
        self.chart.append(ChartPoint(
            time=datetime.fromtimestamp(self._now()).strftime("%H:%M:%S"),
            price=price,
            bid=q.target_bid if q else None,
            ask=q.target_ask if q else None,
            reserve=q.reserve_price if q else None,
        ))

    async def on_order(self, update: OrderUpdate) -> None:
        if self.manager is not None:
            self.manager.on_order_update(update)

    async def on_position(self, update: PositionUpdate) -> None:
        """实盘仓位推送：交易所数据覆盖本地账本。"""
        if self.config.simulation:
            return
        ledger = self.ledger
        long_size = ledger.long_size if update.long_size is None else update.long_size
        short_size = ledger.short_size if update.short_size is None else update.short_size

        # 双向持仓每条消息只覆盖一侧的盈亏
        if update.long_size is not None and update.short_size is not None:
            self._live_upnl = {'long': update.unrealized_pnl, 'short': 0.0}
            if update.realized_pnl is not None:
                self._live_rpnl = {'long': update.realized_pnl, 'short': 0.0}
        else:
            key = 'long' if update.long_size is not None else 'short'
            self._live_upnl[key] = update.unrealized_pnl
            if update.realized_pnl is not None:
                self._live_rpnl[key] = update.realized_pnl

        realized = sum(self._live_rpnl.values()) if update.realized_pnl is not None else None
        ledger.apply_external_snapshot(long_size, short_size, sum(self._live_upnl.values()), realized)

    async def on_balance(self, update: BalanceUpdate) -> None:
        if self.config.simulation or update.currency.upper() != "USDT":
            return
        self.ledger.apply_balance(update.balance)

    # ------------------------------------------------------------------ helpers

    def _spawn(self, coro, name: str) -> asyncio.Task:
        task = asyncio.create_task(coro)
        task.add_done_callback(lambda t: self._log_task_result(name, t))
        return task

    @staticmethod
    def _log_task_result(name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("❌ Background task %s failed: %s", name, exc, exc_info=exc)

    def open_orders(self) -> list:
        if self.config.simulation and self.matching is not None:
            return self.matching.open_orders()
        return self.manager.get_open_orders() if self.manager else []

    def snapshot(self) -> Dict[str, Any]:
        """Current state for display; nothing here feeds back into the strategy."""
        q = self.quote
        return {
            'state': self.state.value,
            'run_id': self.run_id,
            'config': self.config.describe(),
            'price': self.current_price,
            'best_bid': self.best_bid,
            'best_ask': self.best_ask,
            'reserve_price': q.reserve_price if q else None,
            'target_bid': q.target_bid if q else None,
            'target_ask': q.target_ask if q else None,
            'start_time': self.start_time,
            'profit_since_start': self.guardian.profit_since_start if self.guardian.armed else None,
            'profit_target': self.guardian.status(),
            'sigma_estimate': estimate_sigma([p.price for p in self.chart]),
            'open_orders': self.open_orders(),
            **self.ledger.get_statistics(),
        }


async def run_session(config: StrategyConfig, *, dashboard: bool = False, log_buffer: Optional[LogBuffer] = None):
    session = StrategySession(config, log_buffer=log_buffer)
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            pass

    try:
        if not await session.start():
            return
        if dashboard:
            from gate_mm.dashboard import run_dashboard

            await run_dashboard(session, stop_event)
        else:
            await stop_event.wait()
    finally:
        await session.shutdown()


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Gate.io USDT-futures market maker")
    parser.add_argument("--config", help="YAML config file (strategy_config block)")
    parser.add_argument("--env-file", default=".env", help="dotenv file for MM_* / GATE_API_* variables")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--simulate", dest="simulation", action="store_true", default=None, help="paper trading")
    mode.add_argument("--live", dest="simulation", action="store_false", help="real orders on Gate.io")
    parser.add_argument("--dashboard", action="store_true", help="rich terminal dashboard")
    parser.add_argument("--log-level", default="INFO")
    return parser


def main(argv=None) -> int:
    args = build_arg_parser().parse_args(argv)
    log_level = getattr(logging, str(args.log_level).upper(), logging.INFO)

    log_buffer = LogBuffer()
    root = setup_logger("gate_mm", log_level)
    root.addHandler(log_buffer)
    if args.dashboard:
        # Dashboard 自己渲染日志面板，避免刷屏
        for h in list(root.handlers):
            if h is not log_buffer:
                root.removeHandler(h)

    try:
        if args.config:
            config = load_config(args.config)
        else:
            config = StrategyConfig.from_env(env_file=args.env_file)
        if args.simulation is not None:
            config = config.model_copy(update={'simulation': args.simulation})
    except ConfigError as e:
        logger.error("❌ %s", e)
        return 2

    try:
        asyncio.run(run_session(config, dashboard=args.dashboard, log_buffer=log_buffer))
    except ConfigError:
        return 2
    except KeyboardInterrupt:
        print("\n👋 Bye!")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
