import logging
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from gate_mm.core.errors import SimulationInvariantViolation
from gate_mm.core.models import BUY, SELL

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class LedgerSnapshot:
    """Immutable view of the ledger handed to one tick's processing."""
    long_size: float
    short_size: float
    realized_pnl: float
    unrealized_pnl: float
    balance: float
    long_entry: float = 0.0
    short_entry: float = 0.0

    @property
    def net_inventory(self) -> float:
        return self.long_size - self.short_size

    @property
    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl


class PositionLedger:
    """
    持仓与盈亏账本 (Position / PnL Ledger)

    职责：
    1. 记录多空两侧持仓（双向持仓模式，long/short 均 >= 0）
    2. 按成交更新已实现盈亏，按最新价更新浮动盈亏（模拟盘）
    3. 实盘模式下以交易所推送的仓位快照为准（覆盖本地推断）

    进程内只在启动时初始化一次，重启策略不会清零。
    """

    def __init__(self, balance: float = 0.0):
        self.long_size = 0.0
        self.short_size = 0.0
        # 平均开仓价（用于模拟盘的已实现/浮动盈亏）
        self.long_entry = 0.0
        self.short_entry = 0.0
        self.realized_pnl = 0.0
        self.unrealized_pnl = 0.0
        self.balance = float(balance)
        self.total_fees = 0.0

    def net_inventory(self) -> float:
        return self.long_size - self.short_size

    def total_pnl(self) -> float:
        return self.realized_pnl + self.unrealized_pnl

    def apply_fill(
        self,
        side: str,
        size: float,
        reduce_only: bool,
        price: Optional[float] = None,
        fee: float = 0.0,
    ) -> float:
        """
        成交入账

        - reduce-only 买单：减少空头（最多减到 0，不会因平仓单翻成多头）
        - reduce-only 卖单：减少多头
        - 普通买单：增加多头；普通卖单：增加空头

        Returns:
            本次成交产生的已实现盈亏（已扣手续费）
        """
        qty = float(size)
        if qty <= 0:
            return 0.0

        if side == BUY:
            pnl, filled = self._reduce_short(qty, price) if reduce_only else self._open_long(qty, price)
        elif side == SELL:
            pnl, filled = self._reduce_long(qty, price) if reduce_only else self._open_short(qty, price)
        else:
            logger.error("❌ Invalid side: %s", side)
            return 0.0

        # 平仓单被钳制时只对实际平掉的数量收手续费
        fee = float(fee or 0.0) * filled / qty
        pnl -= fee
        self.total_fees += fee
        self.realized_pnl += pnl
        self.balance += pnl
        return pnl

    def _open_long(self, qty: float, price: Optional[float]) -> Tuple[float, float]:
        if price is not None:
            self.long_entry = (self.long_entry * self.long_size + price * qty) / (self.long_size + qty)
        self.long_size += qty
        return 0.0, qty

    def _open_short(self, qty: float, price: Optional[float]) -> Tuple[float, float]:
        if price is not None:
            self.short_entry = (self.short_entry * self.short_size + price * qty) / (self.short_size + qty)
        self.short_size += qty
        return 0.0, qty

    def _reduce_long(self, qty: float, price: Optional[float]) -> Tuple[float, float]:
        closed = min(qty, self.long_size)
        if qty > self.long_size:
            self._warn_clamped("sell", qty, "long", self.long_size)
        pnl = (price - self.long_entry) * closed if price is not None else 0.0
        self.long_size -= closed
        if self.long_size <= 0:
            self.long_size = 0.0
            self.long_entry = 0.0
        return pnl, closed

    def _reduce_short(self, qty: float, price: Optional[float]) -> Tuple[float, float]:
        closed = min(qty, self.short_size)
        if qty > self.short_size:
            self._warn_clamped("buy", qty, "short", self.short_size)
        pnl = (self.short_entry - price) * closed if price is not None else 0.0
        self.short_size -= closed
        if self.short_size <= 0:
            self.short_size = 0.0
            self.short_entry = 0.0
        return pnl, closed

    @staticmethod
    def _warn_clamped(side: str, qty: float, position: str, held: float) -> None:
        violation = SimulationInvariantViolation(
            f"reduce-only {side} of {qty} exceeds {position} position {held}"
        )
        logger.warning("⚠️ %s, clamped at zero", violation)

    def mark_to_market(self, price: float) -> float:
        """模拟盘浮动盈亏：按最新价对多空两侧估值。"""
        self.unrealized_pnl = (
            self.long_size * (price - self.long_entry)
            + self.short_size * (self.short_entry - price)
        )
        return self.unrealized_pnl

    def apply_external_snapshot(
        self,
        long_size: float,
        short_size: float,
        unrealized_pnl: float,
        realized_pnl: Optional[float] = None,
    ) -> None:
        """实盘：交易所推送的仓位快照总是覆盖本地计数。"""
        self.long_size = float(long_size)
        self.short_size = float(short_size)
        self.unrealized_pnl = float(unrealized_pnl)
        if realized_pnl is not None:
            self.realized_pnl = float(realized_pnl)

    def apply_balance(self, balance: float) -> None:
        self.balance = float(balance)

    def snapshot(self) -> LedgerSnapshot:
        return LedgerSnapshot(
            long_size=self.long_size,
            short_size=self.short_size,
            realized_pnl=self.realized_pnl,
            unrealized_pnl=self.unrealized_pnl,
            balance=self.balance,
            long_entry=self.long_entry,
            short_entry=self.short_entry,
        )

    def get_statistics(self) -> Dict:
        return {
            'long': self.long_size,
            'short': self.short_size,
            'inventory': self.net_inventory(),
            'balance': self.balance,
            'realized_pnl': self.realized_pnl,
            'unrealized_pnl': self.unrealized_pnl,
            'total_pnl': self.total_pnl(),
            'fees': self.total_fees,
        }
