"""Gate.io USDT 永续做市策略（gate_mm）。

分层：
- core/：报价模型、账本、调和器、盈利目标守卫、配置与错误
- gateways/：交易所下单通道与行情推送
- sim/：模拟撮合与离线场景回放
- main.py：策略会话 + 命令行入口
"""

__version__ = "0.1.0"
