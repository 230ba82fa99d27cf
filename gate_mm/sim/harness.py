from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from gate_mm.core.config import StrategyConfig, StrategyKind
from gate_mm.core.errors import SimulationInvariantViolation
from gate_mm.main import StrategySession
from gate_mm.sim.fakes import FakeClock, FakeFeed, ScenarioStep


@dataclass
class SimulationReport:
    contract: str
    strategy: str
    steps: int
    runs: int
    reconcile_passes: int
    placed_orders: int
    cancels: int
    fills: int
    guardian_triggers: int
    final_state: str
    last_ledger: Dict


async def run_scenario(
    steps: List[ScenarioStep],
    *,
    config: Optional[StrategyConfig] = None,
    start_ts: float = 1_700_000_000.0,
) -> Tuple[StrategySession, SimulationReport]:
    """Drive a paper session through a price path on a fake clock (no network)."""
    cfg = config or StrategyConfig()
    if not cfg.simulation:
        cfg = cfg.model_copy(update={'simulation': True})

    clock = FakeClock(start_ts)
    feeds: List[FakeFeed] = []

    def feed_factory(c: StrategyConfig) -> FakeFeed:
        feed = FakeFeed(c.contract)
        feeds.append(feed)
        return feed

    session = StrategySession(
        cfg,
        feed_factory=feed_factory,
        now_fn=clock.now,
        restart_cooldown_s=0.0,
    )
    await session.start()

    passes = 0
    manager = session.manager
    for step in steps:
        clock.advance(step.dt)
        if feeds:
            await feeds[-1].push_price(step.price, bid=step.bid, ask=step.ask)
        else:
            await session.on_price(step.price, step.bid, step.ask)
        await session.drain()

        restart = session.pending_restart
        if restart is not None:
            await asyncio.wait([restart])
            await session.drain()

        if session.manager is not manager:
            passes += manager.passes if manager else 0
            manager = session.manager

        ledger = session.ledger
        if ledger.long_size < 0 or ledger.short_size < 0:
            raise SimulationInvariantViolation(
                f"negative position after price {step.price}: long={ledger.long_size} short={ledger.short_size}"
            )

    passes += manager.passes if manager else 0
    matching = session.matching
    report = SimulationReport(
        contract=cfg.contract,
        strategy=cfg.strategy.value,
        steps=len(steps),
        runs=session.run_id,
        reconcile_passes=passes,
        placed_orders=matching.total_orders if matching else 0,
        cancels=matching.cancel_count if matching else 0,
        fills=matching.total_filled if matching else 0,
        guardian_triggers=session.guardian.trigger_count,
        final_state=session.state.value,
        last_ledger=session.ledger.get_statistics(),
    )
    return session, report


def _path(dt: float, prices: List[float]) -> List[ScenarioStep]:
    return [ScenarioStep(dt=dt, price=p) for p in prices]


def build_default_scenarios() -> Dict[str, Tuple[StrategyConfig, List[ScenarioStep]]]:
    return {
        "grid_round_trip": (
            StrategyConfig(strategy=StrategyKind.GRID, grid_spacing=0.01, take_profit_spacing=0.005, taker_fee=0.0),
            [
                ScenarioStep(dt=0.0, price=100.0),
                ScenarioStep(dt=1.0, price=98.9),   # 买单 99 成交
                ScenarioStep(dt=10.0, price=99.0),  # 重挂 + 止盈卖单 99.495
                ScenarioStep(dt=1.0, price=99.6),   # 止盈成交
            ],
        ),
        "avellaneda_inventory_skew": (
            StrategyConfig(strategy=StrategyKind.AVELLANEDA, gamma=1.0, eta=1000.0, sigma=0.01),
            _path(10.0, [100.0, 99.6, 99.2, 98.8, 98.4, 98.0]),
        ),
        "threshold_breach": (
            StrategyConfig(strategy=StrategyKind.GRID, grid_spacing=0.001, take_profit_spacing=0.05, position_threshold=2),
            _path(10.0, [100.0, 99.8, 99.6, 99.4, 99.2, 99.0]),
        ),
        "profit_target_restart": (
            StrategyConfig(
                strategy=StrategyKind.GRID,
                grid_spacing=0.002,
                take_profit_spacing=0.01,
                taker_fee=0.0,
                enable_profit_target=True,
                profit_target=0.3,
                auto_restart=True,
            ),
            [
                ScenarioStep(dt=0.0, price=100.0),  # 买单 99.8
                ScenarioStep(dt=1.0, price=99.7),   # 成交，多头 1 @ 99.8
                ScenarioStep(dt=1.0, price=100.15),  # 浮盈 0.35 >= 0.3 -> 平仓 + 重启
                ScenarioStep(dt=10.0, price=100.4),  # 平仓单成交，新一轮重新挂单
            ],
        ),
    }
