"""流水线执行器：顶层状态机

状态: not_started → running → (succeeded | failed)

按顺序遍历单元（Stage 或 ParallelGroup），前一个单元到达终态后才开始下一个：
  - 单元致命失败：停止调度后续单元，状态置为 failed，触发 on_failure 钩子
  - 走完全部单元：状态置为 succeeded，触发 on_success 钩子（即使存在容忍失败）
  - 外部取消：正在执行的命令按各自超时跑完，当前阶段剩余命令跳过，
    之后不再调度新单元，结论为 failed

未执行的单元不会出现在报告中。
"""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from stageflow.core.models import (
    ParallelGroup,
    PipelineDefinition,
    PipelineState,
    RunReport,
    Stage,
)
from stageflow.core.steps import CancelToken

if TYPE_CHECKING:
    from stageflow.core.hooks import PipelineHook
    from stageflow.core.reporter import RunReporter
    from stageflow.core.scheduler import GroupScheduler
    from stageflow.core.stage import StageExecutor
    from stageflow.core.steps import RunContext

__all__ = ["CancelToken", "PipelineExecutor"]

logger = logging.getLogger(__name__)

_HOOK_ERRORS = (ValueError, RuntimeError, OSError, TypeError, KeyError)


class PipelineExecutor:
    """流水线执行器"""

    def __init__(
        self,
        stage_executor: StageExecutor,
        group_scheduler: GroupScheduler,
        reporter: RunReporter,
        run: RunContext,
        *,
        hooks: list[PipelineHook] | None = None,
        cancel_token: CancelToken | None = None,
    ) -> None:
        self.stage_executor = stage_executor
        self.group_scheduler = group_scheduler
        self.reporter = reporter
        self.run_ctx = run
        self.hooks = list(hooks or [])
        # 阶段执行器经由同一个 RunContext 在命令之间检查取消
        self.cancel_token = cancel_token or run.cancel_token
        run.cancel_token = self.cancel_token
        self.state = PipelineState.NOT_STARTED

    def subscribe(self, hook: PipelineHook) -> None:
        self.hooks.append(hook)

    def _execute_unit(self, unit: Stage | ParallelGroup) -> tuple[list[Stage], bool]:
        """执行一个单元，返回 (已执行阶段, 是否致命失败)"""
        if isinstance(unit, ParallelGroup):
            self.group_scheduler.execute_group(unit)
            return list(unit.members), unit.fatal
        self.stage_executor.execute_stage(unit)
        return [unit], unit.fatal

    def run(self, definition: PipelineDefinition) -> RunReport:
        """执行流水线，始终返回完整报告"""
        if self.state != PipelineState.NOT_STARTED:
            raise RuntimeError(f"执行器已使用过 (state={self.state.value})，请为每次运行创建新实例")
        self.state = PipelineState.RUNNING
        start = time.monotonic()
        logger.info(
            "流水线开始: %s #%s (%d 个单元)",
            definition.name, self.run_ctx.build_id, len(definition.units),
        )

        executed: list[Stage] = []
        fatal = False
        for unit in definition.units:
            if self.cancel_token.cancelled:
                logger.warning("收到取消请求 (%s)，停止调度: %s", self.cancel_token.reason, unit.name)
                break
            stages, fatal = self._execute_unit(unit)
            executed.extend(stages)
            if fatal:
                logger.error("单元致命失败，终止流水线: %s", unit.name)
                break
        cancelled = self.cancel_token.cancelled

        self.state = (
            PipelineState.FAILED if (fatal or cancelled) else PipelineState.SUCCEEDED
        )
        report = self.reporter.finalize(
            executed,
            self.run_ctx.container_report(),
            pipeline=definition.name,
            build_id=self.run_ctx.build_id,
            cancelled=cancelled,
            duration=time.monotonic() - start,
        )
        self._notify(report)
        logger.info(
            "流水线结束: %s -> %s (%.1fs)", definition.name, self.state.value, report.duration,
        )
        return report

    def _notify(self, report: RunReport) -> None:
        for hook in self.hooks:
            try:
                if self.state == PipelineState.SUCCEEDED:
                    hook.on_success(report, self.run_ctx)
                else:
                    hook.on_failure(report, self.run_ctx)
            except _HOOK_ERRORS:
                logger.exception("流水线钩子执行失败: %s", type(hook).__name__)
