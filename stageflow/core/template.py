"""模板渲染步骤

把运行时生成文件（例如交付用 Dockerfile）从流水线控制流中剥离出来，
作为一个独立的、可测试的步骤：输入模板 + 变量，输出文件产物，
结果以 CommandResult 表达，和外部命令一样参与失败策略判定。
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from stageflow.core.models import CommandResult

logger = logging.getLogger(__name__)


class TemplateRenderer:
    """基于 Jinja2 的文件模板渲染器"""

    def __init__(self, search_dirs: list[str] | None = None) -> None:
        self.search_dirs = search_dirs or []

    def render_text(self, template_path: str | Path, context: dict[str, Any]) -> str:
        """渲染模板并返回文本，未定义变量直接报错"""
        path = Path(template_path)
        env = Environment(
            loader=FileSystemLoader([str(path.parent), *self.search_dirs]),
            undefined=StrictUndefined,
            keep_trailing_newline=True,
            autoescape=False,  # noqa: S701  生成 Dockerfile 与脚本
        )
        return env.get_template(path.name).render(**context)

    def render(
        self, template_path: str | Path, output_path: str | Path,
        context: dict[str, Any] | None = None,
    ) -> CommandResult:
        """渲染模板写入 output_path，失败返回非零结果而不抛异常"""
        start = time.monotonic()
        out = Path(output_path)
        try:
            text = self.render_text(template_path, context or {})
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(text, encoding="utf-8")
        except (TemplateError, OSError) as e:
            logger.error("模板渲染失败 %s: %s", template_path, e)
            return CommandResult(
                exit_code=1, stderr=f"模板渲染失败: {e}",
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        logger.info("已渲染: %s -> %s", template_path, out)
        return CommandResult(
            exit_code=0, stdout=f"{out}\n",
            duration_ms=int((time.monotonic() - start) * 1000),
        )
