import logging
import math
from dataclasses import dataclass
from typing import Sequence

import numpy as np

from gate_mm.core.config import StrategyConfig, StrategyKind

logger = logging.getLogger(__name__)

# 报价下限：计算结果为负/零时钳制到这个最小价格单位
MIN_PRICE_TICK = 0.0001


@dataclass(frozen=True)
class Quote:
    reserve_price: float
    target_bid: float
    target_ask: float

    @property
    def half_spread(self) -> float:
        return (self.target_ask - self.target_bid) / 2


def grid_quote(price: float, grid_spacing: float) -> Quote:
    """固定间距网格：以最新价为中心，上下各挂 grid_spacing 比例。"""
    return Quote(
        reserve_price=price,
        target_bid=price * (1 - grid_spacing),
        target_ask=price * (1 + grid_spacing),
    )


def avellaneda_quote(price: float, inventory: float, config: StrategyConfig) -> Quote:
    """
    Avellaneda-Stoikov 报价

    核心公式:
    1. 保留价格 r = s - q * gamma * sigma^2 * T * s
    2. 半价差 = max(grid_spacing * s / 2, [gamma*sigma^2*T/2 + ln(1 + gamma/eta)/gamma] * s)

    q > 0（多头）时报价整体下移以促卖出；q < 0（空头）时上移以促买入。
    """
    gamma = config.gamma
    eta = config.eta
    variance = (config.sigma ** 2) * config.time_horizon

    inventory_shift = gamma * variance * price
    reserve_price = price - inventory * inventory_shift

    spread_term = 0.5 * gamma * variance + (1.0 / gamma) * math.log(1 + gamma / eta)
    half_spread = max(config.grid_spacing * price * 0.5, spread_term * price)

    return Quote(
        reserve_price=reserve_price,
        target_bid=reserve_price - half_spread,
        target_ask=reserve_price + half_spread,
    )


def _clamp(value: float, label: str, price: float) -> float:
    if value >= MIN_PRICE_TICK:
        return value
    logger.warning(
        "⚠️ Computed %s %.6f below minimum tick at price %.6f, clamped to %s",
        label, value, price, MIN_PRICE_TICK,
    )
    return MIN_PRICE_TICK


def compute_quote(price: float, inventory: float, config: StrategyConfig) -> Quote:
    """Dispatch on the configured strategy and clamp bid/ask to a positive floor."""
    if not price > 0:
        raise ValueError(f"price must be positive (got {price})")

    if config.strategy == StrategyKind.AVELLANEDA:
        quote = avellaneda_quote(price, inventory, config)
    else:
        quote = grid_quote(price, config.grid_spacing)

    bid = _clamp(quote.target_bid, "bid", price)
    ask = _clamp(quote.target_ask, "ask", price)
    if bid == quote.target_bid and ask == quote.target_ask:
        return quote
    return Quote(reserve_price=quote.reserve_price, target_bid=bid, target_ask=ask)


def estimate_sigma(prices: Sequence[float], min_samples: int = 10) -> float | None:
    """EWMA realized volatility of log returns (display only, not fed back to quoting)."""
    if len(prices) < min_samples:
        return None
    arr = np.asarray(prices, dtype=float)
    if np.any(arr <= 0):
        return None

    log_rets = np.diff(np.log(arr))
    # 近期数据权重更高
    weights = np.exp(np.linspace(-1, 0, len(log_rets)))
    weights = weights / weights.sum()
    return float(np.sqrt(np.sum(weights * log_rets ** 2)))
