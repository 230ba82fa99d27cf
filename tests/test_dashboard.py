import logging

import pytest

from gate_mm.core.config import StrategyConfig, StrategyKind
from gate_mm.dashboard import render_once
from gate_mm.main import StrategySession
from gate_mm.sim.fakes import FakeFeed
from gate_mm.utils.logging import SUCCESS, LogBuffer, log_success


def test_log_buffer_keeps_recent_entries():
    buffer = LogBuffer(maxlen=3)
    logger = logging.getLogger("gate_mm.test_buffer")
    logger.setLevel(logging.INFO)
    logger.addHandler(buffer)
    try:
        for i in range(5):
            logger.info("msg %s", i)
        log_success(logger, "filled %s", 7)
    finally:
        logger.removeHandler(buffer)

    entries = buffer.recent(10)
    assert [e.message for e in entries] == ["msg 3", "msg 4", "filled 7"]
    assert entries[-1].level == logging.getLevelName(SUCCESS)


def test_render_idle_session():
    session = StrategySession(StrategyConfig(), log_buffer=LogBuffer())
    text = render_once(session)
    assert "Gate MM" in text
    assert "IDLE" in text
    assert "No ticks yet" in text


@pytest.mark.asyncio
async def test_render_running_session_with_orders():
    buffer = LogBuffer()
    root = logging.getLogger("gate_mm")
    previous_level = root.level
    root.setLevel(logging.INFO)
    root.addHandler(buffer)
    try:
        session = StrategySession(
            StrategyConfig(strategy=StrategyKind.GRID, enable_profit_target=True, profit_target=50.0),
            feed_factory=lambda cfg: FakeFeed(cfg.contract),
            log_buffer=buffer,
        )
        await session.start()
        await session.feed.push_price(100.0, bid=99.9, ask=100.1)
        await session.drain()

        text = render_once(session)
        assert "RUNNING" in text
        assert "BUY" in text and "SELL" in text
        assert "0.00 / 50.00 USDT" in text
        assert "System Logs" in text
        assert any("策略启动" in e.message for e in buffer.recent())
        await session.shutdown()
    finally:
        root.removeHandler(buffer)
        root.setLevel(previous_level)
