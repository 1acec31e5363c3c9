"""stageflow 日志配置

两种控制台输出：
  - 文本：框架日志带时间戳和级别；命令输出（"stageflow.output"）只保留 "[阶段] 行"
  - JSON：每条记录一行，命令输出额外带 stage 字段，便于 CI 按阶段聚合
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone

OUTPUT_LOGGER = "stageflow.output"

_TEXT_FORMAT = "%(asctime)s [%(levelname)-7s] %(name)s: %(message)s"


class JSONFormatter(logging.Formatter):
    """结构化 JSON 日志格式器"""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        stage = getattr(record, "stage", None)
        if stage:
            log_entry["stage"] = stage
        if record.exc_info and record.exc_info[1]:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, ensure_ascii=False)


class ConsoleFormatter(logging.Formatter):
    """命令输出原样透传，其余日志使用带时间戳的格式"""

    def __init__(self) -> None:
        super().__init__(_TEXT_FORMAT)

    def format(self, record: logging.LogRecord) -> str:
        if record.name == OUTPUT_LOGGER:
            return record.getMessage()
        return super().format(record)


def setup_logging(level: str = "INFO", json_output: bool = False) -> None:
    """配置根日志器（输出到 stderr，先清理已有 handlers）

    示例:
        >>> setup_logging("DEBUG")
        >>> setup_logging("INFO", json_output=True)  # CI 环境
    """
    root = logging.getLogger()
    reset_logging()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root.addHandler(handler)


def reset_logging() -> None:
    """清理根日志器的所有 handlers"""
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
