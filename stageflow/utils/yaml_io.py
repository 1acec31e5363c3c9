"""YAML / 文本文件统一读写工具

集中管理流水线定义与配置文件的读取、报告与历史文件的原子写入。
统一 encoding="utf-8"、空值保护、目录自动创建。
"""

from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

logger = logging.getLogger(__name__)

# 定义文件最大大小 (10MB)
MAX_YAML_SIZE = 10 * 1024 * 1024


def atomic_write(path: Path, content: str) -> None:
    """原子写入：同目录临时文件 + os.replace，中途崩溃不会留下半截报告"""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.replace(tmp, str(path))
    except Exception:
        try:
            os.unlink(tmp)
        except OSError:
            pass
        raise


def load_yaml(path: str | Path) -> dict[str, Any]:
    """安全读取 YAML 映射

    文件不存在、为空或顶层不是映射时返回空字典；
    解析错误和 IO 错误记录日志后继续抛出。
    """
    p = Path(path)
    if not p.exists():
        return {}

    size = p.stat().st_size
    if size > MAX_YAML_SIZE:
        raise ValueError(f"YAML 文件过大: {p} ({size} 字节)，超过限制 {MAX_YAML_SIZE} 字节")

    try:
        with open(p, encoding="utf-8") as f:
            result = yaml.safe_load(f)
    except yaml.YAMLError as e:
        logger.error("解析 YAML 文件失败: %s, 错误: %s", path, e)
        raise
    except OSError as e:
        logger.error("读取文件失败: %s, 错误: %s", path, e)
        raise

    if result is None:
        return {}
    if not isinstance(result, dict):
        logger.warning("%s 顶层不是映射 (实际类型: %s)，返回空字典", path, type(result).__name__)
        return {}
    return result
