"""容器步骤处理器

把 ContainerLifecycleManager / HealthMonitor 的操作包装为流水线步骤。
运行时不可达统一转换为 CONTAINER_UNREACHABLE 结果，由阶段执行器决定严重性
（部署 / 健康检查为致命，日志抓取为 best-effort）。
"""

from __future__ import annotations

import json
import logging
import time
from abc import abstractmethod
from pathlib import Path

from stageflow.core.exceptions import (
    ContainerOperationError,
    ContainerUnreachableError,
    DeployError,
    ImageBuildError,
)
from stageflow.core.models import CommandResult, CommandSpec, ErrorCode
from stageflow.core.steps import StepContext, StepHandler, StepRegistry
from stageflow.services.docker.health import HealthMonitor
from stageflow.services.docker.lifecycle import ContainerLifecycleManager

logger = logging.getLogger(__name__)

# docker 自身错误的退出码
UNREACHABLE_EXIT_CODE = 125


def _ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _unreachable(e: ContainerUnreachableError, start: float) -> CommandResult:
    logger.error("容器运行时不可达: %s", e)
    return CommandResult(
        exit_code=UNREACHABLE_EXIT_CODE, stderr=str(e),
        duration_ms=_ms(start), error=ErrorCode.CONTAINER_UNREACHABLE,
    )


class ContainerStepHandler(StepHandler):
    """容器步骤基类：统一处理运行时不可达"""

    def __init__(self, lifecycle: ContainerLifecycleManager) -> None:
        self.lifecycle = lifecycle

    def handle(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        start = time.monotonic()
        try:
            result = self.run(spec, ctx)
        except ContainerUnreachableError as e:
            return _unreachable(e, start)
        if not result.duration_ms:
            result = CommandResult(
                exit_code=result.exit_code, stdout=result.stdout, stderr=result.stderr,
                duration_ms=_ms(start), error=result.error,
            )
        return result

    @abstractmethod
    def run(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        """执行容器操作；运行时不可达时可直接抛 ContainerUnreachableError"""


class ImageBuildHandler(ContainerStepHandler):
    kind = "image_build"
    required = ("image",)

    def run(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        opts = spec.options
        context = ctx.resolve(opts.get("context", "."))
        dockerfile = str(ctx.resolve(opts["dockerfile"])) if opts.get("dockerfile") else ""
        try:
            self.lifecycle.build(opts["image"], str(context), dockerfile)
        except ImageBuildError as e:
            return CommandResult(
                exit_code=e.result.exit_code or 1,
                stdout=e.result.stdout, stderr=e.result.stderr,
            )
        return CommandResult(exit_code=0, stdout=f"{opts['image']}\n")


class DeployHandler(ContainerStepHandler):
    kind = "deploy"
    required = ("container", "image")

    def run(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        opts = spec.options
        try:
            handle = self.lifecycle.deploy(
                opts["container"], opts["image"],
                opts.get("restart_policy", "unless-stopped"),
                ports=opts.get("ports"), env=opts.get("env"),
            )
        except (DeployError, ContainerOperationError) as e:
            return CommandResult(
                exit_code=e.result.exit_code or 1,
                stdout=e.result.stdout, stderr=e.result.stderr,
            )
        ctx.run.record_container(**handle.to_dict())
        return CommandResult(exit_code=0, stdout=json.dumps(handle.to_dict()) + "\n")


class HealthCheckHandler(ContainerStepHandler):
    kind = "health_check"
    required = ("container",)

    def __init__(self, lifecycle: ContainerLifecycleManager, monitor: HealthMonitor) -> None:
        super().__init__(lifecycle)
        self.monitor = monitor

    def run(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        opts = spec.options
        cfg = ctx.run.config
        name = opts["container"]
        report = self.monitor.wait_healthy(
            name,
            poll_interval=float(opts.get("poll_interval", cfg.health_poll_interval)),
            max_wait=float(opts.get("max_wait", cfg.health_max_wait)),
        )
        snapshot = self.lifecycle.snapshot(name)
        ctx.run.record_container(health=report.to_dict(), **snapshot)
        body = json.dumps(report.to_dict(), ensure_ascii=False) + "\n"
        if report.healthy:
            return CommandResult(exit_code=0, stdout=body)
        return CommandResult(exit_code=1, stdout=body, stderr=report.message)


class ContainerLogsHandler(ContainerStepHandler):
    """抓取容器日志写入文件（诊断步骤，总是 best-effort）"""

    kind = "container_logs"
    required = ("container",)

    def run(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        opts = spec.options
        name = opts["container"]
        tail = int(opts.get("tail", ctx.run.config.log_tail_lines))
        output = ctx.resolve(opts.get("output", f"{name}-container.log"))
        text = self.lifecycle.logs(name, tail)
        Path(output).parent.mkdir(parents=True, exist_ok=True)
        Path(output).write_text(text, encoding="utf-8")
        return CommandResult(exit_code=0, stdout=f"{output}\n")


class ContainerCleanupHandler(ContainerStepHandler):
    """停止并删除容器，不存在时为空操作，其他失败返回非零结果"""

    kind = "container_cleanup"
    required = ("container",)

    def run(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        name = spec.options["container"]
        try:
            self.lifecycle.stop(name)
            self.lifecycle.remove(name)
        except ContainerOperationError as e:
            logger.error("容器清理失败: %s", e)
            return CommandResult(
                exit_code=e.result.exit_code or 1,
                stdout=e.result.stdout, stderr=e.result.stderr or str(e),
            )
        return CommandResult(exit_code=0)


def register_container_steps(
    registry: StepRegistry, lifecycle: ContainerLifecycleManager, monitor: HealthMonitor,
) -> None:
    registry.register(ImageBuildHandler(lifecycle))
    registry.register(DeployHandler(lifecycle))
    registry.register(HealthCheckHandler(lifecycle, monitor))
    registry.register(ContainerLogsHandler(lifecycle))
    registry.register(ContainerCleanupHandler(lifecycle))
