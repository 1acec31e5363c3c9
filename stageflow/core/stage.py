"""阶段执行器

算法:
  1. 严格按顺序执行命令；第一条硬失败的命令终止阶段，其余命令记为 skipped
  2. 无论成功与否都执行产物收集（失败时的分析报告最有诊断价值）
  3. 根据失败策略给出阶段结论

硬失败 = 退出码非零，且该命令未标记 best-effort。
工具缺失（TOOL_UNAVAILABLE）先尝试执行 provision 命令后重试一次，
仍缺失则记为降级，本身不构成硬失败。
运行被取消时，正在执行的命令跑完，其余命令记为 skipped，阶段记为失败。
步骤或收集过程中的意外异常同样记入阶段结果（强制致命），不会向上抛出。
"""

from __future__ import annotations

import logging
import re
import shlex
from pathlib import Path

from stageflow.core.collector import ArtifactCollector
from stageflow.core.exceptions import ArtifactMissingError, StageflowError
from stageflow.core.models import (
    CommandRecord,
    CommandResult,
    CommandSpec,
    ErrorCode,
    Stage,
    StageStatus,
)
from stageflow.core.steps import RunContext, StepContext, StepRegistry

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9_.\-]+")

# 无论失败策略如何都会终止流水线的错误码
_FORCED_FATAL = (ErrorCode.CONTAINER_UNREACHABLE, ErrorCode.INTERNAL_ERROR)


def log_file_name(stage_name: str) -> str:
    """阶段名转换为安全的日志文件名"""
    return _UNSAFE_CHARS.sub("_", stage_name).strip("_") + ".log"


def _tool_name(spec: CommandSpec) -> str:
    if isinstance(spec.command, list):
        return spec.command[0] if spec.command else spec.label
    try:
        parts = shlex.split(spec.command) if spec.command else []
    except ValueError:
        parts = spec.command.split()
    return parts[0] if parts else spec.label


class StageExecutor:
    """单阶段执行器（线程安全：不持有阶段间可变状态）"""

    def __init__(
        self,
        registry: StepRegistry,
        collector: ArtifactCollector,
        run: RunContext,
        log_dir: str | Path | None = None,
    ) -> None:
        self.registry = registry
        self.collector = collector
        self.run = run
        self.log_dir = Path(log_dir) if log_dir else None

    def _work_dir(self, stage: Stage) -> Path:
        base = Path(self.run.config.workspace_dir)
        cwd = Path(stage.work_dir) if stage.work_dir else base
        if not cwd.is_absolute():
            cwd = base / cwd
        cwd.mkdir(parents=True, exist_ok=True)
        return cwd

    def _log_path(self, stage: Stage) -> Path | None:
        if self.log_dir is None:
            return None
        path = self.log_dir / log_file_name(stage.name)
        path.parent.mkdir(parents=True, exist_ok=True)
        # 重跑时覆盖上一次的阶段日志
        path.write_text("", encoding="utf-8")
        return path

    def _dispatch(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        try:
            return self.registry.get(spec.kind).handle(spec, ctx)
        except (StageflowError, OSError, ValueError) as e:
            logger.exception("[%s] 步骤异常: %s", ctx.stage.name, spec.label)
            return CommandResult(
                exit_code=1, stderr=str(e), error=getattr(e, "code", type(e).__name__),
            )
        except Exception as e:
            logger.exception("[%s] 步骤内部错误: %s", ctx.stage.name, spec.label)
            return CommandResult(
                exit_code=1, stderr=f"{type(e).__name__}: {e}", error=ErrorCode.INTERNAL_ERROR,
            )

    def _invoke(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        result = self._dispatch(spec, ctx)
        if result.tool_missing and spec.provision:
            logger.warning("[%s] 工具缺失，尝试安装: %s", ctx.stage.name, _tool_name(spec))
            for prov in spec.provision:
                prov_result = self._dispatch(prov, ctx)
                if not prov_result.success:
                    logger.warning(
                        "[%s] 安装步骤失败（忽略）: %s rc=%d",
                        ctx.stage.name, prov.label, prov_result.exit_code,
                    )
            result = self._dispatch(spec, ctx)
        return result

    def execute_stage(self, stage: Stage) -> Stage:
        """执行阶段，返回填充了状态的同一对象；任何异常都落入阶段结果"""
        stage.start()
        logger.info("[Stage] 开始: %s (policy=%s)", stage.name, stage.failure_policy.value)
        try:
            self._execute(stage)
        except Exception as e:
            logger.exception("[Stage] 执行异常: %s", stage.name)
            stage.forced_fatal = True
            stage.error_code = stage.error_code or ErrorCode.INTERNAL_ERROR
            if not stage.status.terminal:
                stage.finish(StageStatus.FAILED, f"执行异常: {e}")
        log = logger.info if stage.status == StageStatus.SUCCEEDED else logger.error
        log("[Stage] 结束: %s -> %s (%.1fs)", stage.name, stage.outcome, stage.duration)
        return stage

    def _execute(self, stage: Stage) -> None:
        ctx = StepContext(
            run=self.run,
            stage=stage,
            cwd=self._work_dir(stage),
            env=self.run.config.command_env(self.run.env, stage.env),
            log_path=self._log_path(stage),
        )
        failed = self._run_commands(stage, ctx)

        problem = self._collect(stage, ctx)
        if problem:
            code, note = problem
            stage.forced_fatal = True
            if not stage.error_code:
                stage.error_code = code
            stage.message = f"{stage.message}; {note}" if stage.message else note
            failed = True

        stage.finish(StageStatus.FAILED if failed else StageStatus.SUCCEEDED)

    def _run_commands(self, stage: Stage, ctx: StepContext) -> bool:
        """按序执行命令，返回是否硬失败（含取消）"""
        token = self.run.cancel_token
        stopped = False
        for spec in stage.commands:
            record = CommandRecord(label=spec.label, best_effort=spec.always_best_effort)
            stage.records.append(record)
            if stopped:
                record.status = StageStatus.SKIPPED
                continue
            if token.cancelled:
                record.status = StageStatus.SKIPPED
                stopped = True
                stage.error_code = ErrorCode.CANCELLED
                stage.message = f"运行已取消 ({token.reason})，跳过剩余命令"
                logger.warning("[%s] 运行已取消，跳过剩余命令", stage.name)
                continue

            result = self._invoke(spec, ctx)
            record.exit_code = result.exit_code
            record.duration_ms = result.duration_ms
            record.error = result.error

            if result.success:
                record.status = StageStatus.SUCCEEDED
                continue
            record.status = StageStatus.FAILED

            if result.tool_missing:
                tool = _tool_name(spec)
                logger.warning("[%s] 工具不可用，降级继续: %s", stage.name, tool)
                stage.degraded.append(tool)
            elif spec.always_best_effort:
                logger.warning(
                    "[%s] best-effort 命令失败（忽略）: %s rc=%d",
                    stage.name, spec.label, result.exit_code,
                )
            else:
                stopped = True
                stage.error_code = result.error
                if result.error in _FORCED_FATAL:
                    stage.forced_fatal = True
                stage.message = (
                    f"{spec.label} 失败 (rc={result.exit_code}): {result.tail(300).strip()}"
                )
                logger.error("[%s] 命令失败: %s rc=%d", stage.name, spec.label, result.exit_code)
        return stopped

    def _collect(self, stage: Stage, ctx: StepContext) -> tuple[str, str] | None:
        """收集产物，返回 (错误码, 说明)；必需产物缺失或收集异常时非空"""
        problem: tuple[str, str] | None = None
        try:
            stage.artifacts = self.collector.collect(stage.name, stage.artifact_specs, ctx.cwd)
        except ArtifactMissingError as e:
            stage.artifacts = list(e.artifacts)
            problem = (ErrorCode.ARTIFACT_MISSING_REQUIRED, f"必需产物缺失: {', '.join(e.missing)}")
        except Exception as e:
            logger.exception("[%s] 产物收集异常", stage.name)
            problem = (ErrorCode.INTERNAL_ERROR, f"产物收集异常: {e}")
        if ctx.log_path is not None:
            log_artifact = self.collector.register(stage.name, ctx.log_path)
            if log_artifact is not None and log_artifact.size_bytes:
                stage.artifacts.append(log_artifact)
        return problem
