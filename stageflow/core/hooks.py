"""流水线钩子（Observer 模式）

执行器在流水线结束后按结论通知钩子：
  - on_success: 到达单元列表末尾且无致命失败（可能含容忍失败）
  - on_failure: 因致命失败或取消而终止

钩子异常只记录日志，不影响报告的完整性。

用法:
    executor = PipelineExecutor(..., hooks=[ContainerLogsHook(lifecycle, log_dir)])
"""

from __future__ import annotations

import logging
from abc import ABC
from pathlib import Path
from typing import TYPE_CHECKING

from stageflow.core.exceptions import ContainerUnreachableError

if TYPE_CHECKING:
    from stageflow.core.models import RunReport
    from stageflow.core.steps import RunContext
    from stageflow.services.docker.lifecycle import ContainerLifecycleManager

logger = logging.getLogger(__name__)


class PipelineHook(ABC):
    """钩子基类，按需覆盖 on_success / on_failure"""

    def on_success(self, report: RunReport, run: RunContext) -> None:  # noqa: B027
        """流水线成功"""

    def on_failure(self, report: RunReport, run: RunContext) -> None:  # noqa: B027
        """流水线失败"""


class SummaryHook(PipelineHook):
    """输出结论摘要"""

    def on_success(self, report: RunReport, run: RunContext) -> None:
        tolerated = report.tolerated_failures
        if tolerated:
            logger.warning(
                "流水线成功（含 %d 个容忍失败: %s）", len(tolerated), ", ".join(tolerated),
            )
        else:
            logger.info("流水线成功: %s #%s", report.pipeline, report.build_id)

    def on_failure(self, report: RunReport, run: RunContext) -> None:
        if report.cancelled:
            logger.error("流水线已取消: %s #%s", report.pipeline, report.build_id)
            return
        fatal = [e.name for e in report.entries if e.fatal]
        logger.error("流水线失败: %s #%s (致命阶段: %s)",
                     report.pipeline, report.build_id, ", ".join(fatal))


class ContainerLogsHook(PipelineHook):
    """致命失败时抓取容器日志，便于诊断

    容器名优先取配置项 dump_logs_container，其次取本次运行最近部署的容器。
    运行时不可达只记录到诊断信息中（容忍）。
    """

    def __init__(
        self, lifecycle: ContainerLifecycleManager, log_dir: str | Path,
        container: str = "", tail: int = 100,
    ) -> None:
        self.lifecycle = lifecycle
        self.log_dir = Path(log_dir)
        self.container = container
        self.tail = tail

    def on_failure(self, report: RunReport, run: RunContext) -> None:
        name = self.container or run.container_report().get("name", "")
        if not name:
            return
        try:
            text = self.lifecycle.logs(name, self.tail)
        except ContainerUnreachableError as e:
            logger.warning("无法抓取容器日志 %s: %s", name, e)
            report.diagnostics["container_logs"] = f"unreachable: {e}"
            return
        self.log_dir.mkdir(parents=True, exist_ok=True)
        path = self.log_dir / f"container-{name}.log"
        path.write_text(text, encoding="utf-8")
        report.diagnostics["container_logs"] = str(path)
        logger.info("容器日志已保存: %s (最后 %d 行)", path, self.tail)
        for line in text.splitlines()[-20:]:
            logger.info("  [%s] %s", name, line)
