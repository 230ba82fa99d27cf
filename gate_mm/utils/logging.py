import logging
from collections import deque
from dataclasses import dataclass
from datetime import datetime
from typing import List

# 介于 INFO(20) 与 WARNING(30) 之间：成交、启动成功等"好消息"
SUCCESS = 25
logging.addLevelName(SUCCESS, "SUCCESS")

LOG_BUFFER_SIZE = 500


def setup_logger(name: str = "gate_mm", level: int = logging.INFO) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    # 控制台 handler（避免重复添加）
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        ch = logging.StreamHandler()
        fmt = logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s - %(message)s"
        )
        ch.setFormatter(fmt)
        logger.addHandler(ch)
    return logger


def log_success(logger: logging.Logger, msg: str, *args) -> None:
    logger.log(SUCCESS, msg, *args)


@dataclass(frozen=True)
class LogEntry:
    timestamp: str
    level: str
    message: str


class LogBuffer(logging.Handler):
    """Keeps the most recent log records for the dashboard / snapshot."""

    def __init__(self, maxlen: int = LOG_BUFFER_SIZE, level: int = logging.INFO):
        super().__init__(level=level)
        self.entries: deque = deque(maxlen=maxlen)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            entry = LogEntry(
                timestamp=datetime.fromtimestamp(record.created).strftime("%H:%M:%S"),
                level=record.levelname,
                message=record.getMessage(),
            )
            self.entries.append(entry)
        except Exception:
            self.handleError(record)

    def recent(self, n: int = 10) -> List[LogEntry]:
        return list(self.entries)[-n:]
