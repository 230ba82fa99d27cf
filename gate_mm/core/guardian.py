import logging
from typing import Optional

logger = logging.getLogger(__name__)


class ProfitTargetGuardian:
    """
    盈利目标守卫 (Profit-Target Guardian)

    每个 tick 都检查（不受节流限制）：
    profit_since_start = total_pnl - baseline
    达到 target 时返回 True，由 Session 执行清仓 / 停止 / 可选的延迟重启。

    触发后自动解除武装，同一轮运行只会触发一次。
    """

    def __init__(self, enabled: bool, target: float):
        self.enabled = enabled
        self.target = target
        self.baseline_pnl = 0.0
        self.armed = False
        self.last_pnl = 0.0
        self.last_trigger_reason = ""
        self.trigger_count = 0

    def arm(self, baseline_pnl: float) -> None:
        """Capture the run-start PnL baseline."""
        self.baseline_pnl = float(baseline_pnl)
        self.last_pnl = self.baseline_pnl
        self.armed = True
        if self.enabled:
            logger.info("🎯 盈利目标已启用: %.2f USDT (基线 %.4f)", self.target, self.baseline_pnl)

    def disarm(self) -> None:
        self.armed = False

    @property
    def profit_since_start(self) -> float:
        return self.last_pnl - self.baseline_pnl

    def check(self, total_pnl: float) -> bool:
        """
        Returns:
            True: 达到盈利目标，应立即清仓
            False: 继续运行
        """
        self.last_pnl = float(total_pnl)
        if not (self.enabled and self.armed):
            return False

        profit = self.profit_since_start
        if profit < self.target:
            return False

        self.armed = False
        self.trigger_count += 1
        self.last_trigger_reason = f"Profit {profit:.4f} >= target {self.target:.4f}"
        logger.warning("🎯 达到盈利目标! %s", self.last_trigger_reason)
        return True

    def status(self) -> Optional[str]:
        if not self.enabled:
            return None
        return f"{self.profit_since_start:.2f} / {self.target:.2f} USDT"
