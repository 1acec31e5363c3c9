"""步骤处理器 - Strategy 模式

阶段中的每条命令按 kind 分派给对应处理器，所有处理器统一返回 CommandResult，
因此内置步骤（模板渲染、打包、容器操作）与外部命令遵循同一套失败策略。

内置处理器:
- exec: 外部命令（经 CommandExecutor）
- render: Jinja2 模板渲染为文件
- package: 打包交付产物为 tar.gz 并生成 sha256 校验文件
容器相关处理器位于 stageflow.services.docker.steps，由服务容器注册。
"""

from __future__ import annotations

import hashlib
import logging
import tarfile
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from stageflow.core.collector import ArtifactCollector
from stageflow.core.config import Config
from stageflow.core.exceptions import ValidationError
from stageflow.core.models import CommandResult, CommandSpec, Stage
from stageflow.core.runner import CommandExecutor
from stageflow.core.template import TemplateRenderer

logger = logging.getLogger(__name__)


# =========================================================================
# 上下文
# =========================================================================


class CancelToken:
    """外部取消信号（线程安全）"""

    def __init__(self) -> None:
        self._event = threading.Event()
        self.reason = ""

    def cancel(self, reason: str = "用户取消") -> None:
        self.reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class RunContext:
    """一次运行共享的上下文（配置、构建号、取消信号、容器事实）"""

    config: Config
    build_id: str
    pipeline: str = ""
    params: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    container: dict[str, Any] = field(default_factory=dict)
    cancel_token: CancelToken = field(default_factory=CancelToken, repr=False)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def record_container(self, **info: Any) -> None:
        """记录最近一次部署 / 健康检查的容器事实"""
        with self._lock:
            self.container.update(info)

    def container_report(self) -> dict[str, Any]:
        with self._lock:
            return dict(self.container)


@dataclass
class StepContext:
    """单次步骤调用的上下文"""

    run: RunContext
    stage: Stage
    cwd: Path
    env: dict[str, str]
    log_path: Path | None = None

    def resolve(self, path: str) -> Path:
        p = Path(path)
        return p if p.is_absolute() else self.cwd / p


# =========================================================================
# 处理器
# =========================================================================


class StepHandler(ABC):
    """步骤处理器公共接口"""

    kind: str = ""
    required: tuple[str, ...] = ()

    @abstractmethod
    def handle(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        """执行步骤，失败以非零结果返回"""

    def validate(self, spec: CommandSpec) -> list[str]:
        """返回校验错误列表"""
        return [
            f"{self.kind} 缺少参数 '{key}'"
            for key in self.required if not spec.options.get(key)
        ]


class ExecHandler(StepHandler):
    """外部命令"""

    kind = "exec"

    def __init__(self, executor: CommandExecutor) -> None:
        self.executor = executor

    def handle(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        cwd = ctx.resolve(spec.cwd) if spec.cwd else ctx.cwd
        env = {**ctx.env, **spec.env} if spec.env else ctx.env
        return self.executor.run(
            spec, str(cwd), env, label=ctx.stage.name, log_path=ctx.log_path,
        )

    def validate(self, spec: CommandSpec) -> list[str]:
        return [] if spec.command else ["命令为空"]


class RenderHandler(StepHandler):
    """模板渲染，模板变量 = 运行参数 + 步骤 context"""

    kind = "render"
    required = ("template", "output")

    def __init__(self, renderer: TemplateRenderer) -> None:
        self.renderer = renderer

    def handle(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        template = Path(spec.options["template"])
        if not template.is_absolute():
            # 模板相对工作区根目录查找，其次相对阶段目录
            workspace = Path(ctx.run.config.workspace_dir) / template
            template = workspace if workspace.exists() else ctx.resolve(str(template))
        context: dict[str, Any] = {
            **ctx.run.params,
            "build_id": ctx.run.build_id,
            "pipeline": ctx.run.pipeline,
            **spec.options.get("context", {}),
        }
        return self.renderer.render(template, ctx.resolve(spec.options["output"]), context)


class PackageHandler(StepHandler):
    """打包交付产物: tar.gz + .sha256"""

    kind = "package"
    required = ("output", "include")

    def handle(self, spec: CommandSpec, ctx: StepContext) -> CommandResult:
        start = time.monotonic()
        output = ctx.resolve(spec.options["output"])
        patterns = spec.options["include"]
        if isinstance(patterns, str):
            patterns = [patterns]

        files: list[Path] = []
        for pattern in patterns:
            for match in ArtifactCollector.match(pattern, ctx.cwd):
                if match.resolve() != output.resolve() and match not in files:
                    files.append(match)
        if not files:
            return CommandResult(
                exit_code=1, stderr=f"没有可打包的文件: {patterns}",
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        output.parent.mkdir(parents=True, exist_ok=True)
        with tarfile.open(output, "w:gz") as tar:
            for f in files:
                try:
                    arcname = f.relative_to(ctx.cwd)
                except ValueError:
                    arcname = Path(f.name)
                tar.add(f, arcname=str(arcname))

        digest = hashlib.sha256(output.read_bytes()).hexdigest()
        checksum = output.with_name(output.name + ".sha256")
        checksum.write_text(f"{digest}  {output.name}\n", encoding="utf-8")
        logger.info("已打包 %d 个文件: %s (sha256=%s)", len(files), output, digest[:12])
        return CommandResult(
            exit_code=0,
            stdout="".join(f"{f}\n" for f in files),
            duration_ms=int((time.monotonic() - start) * 1000),
        )


# =========================================================================
# 注册表
# =========================================================================


class StepRegistry:
    """按 kind 查找处理器"""

    def __init__(self) -> None:
        self._handlers: dict[str, StepHandler] = {}

    def register(self, handler: StepHandler) -> None:
        self._handlers[handler.kind] = handler

    def get(self, kind: str) -> StepHandler:
        handler = self._handlers.get(kind)
        if handler is None:
            raise ValidationError(f"未知步骤类型: {kind}（可用: {sorted(self._handlers)}）")
        return handler

    def kinds(self) -> list[str]:
        return sorted(self._handlers)

    def validate(self, spec: CommandSpec) -> list[str]:
        if spec.kind not in self._handlers:
            return [f"未知步骤类型: {spec.kind}"]
        return self._handlers[spec.kind].validate(spec)


def default_registry(executor: CommandExecutor, renderer: TemplateRenderer | None = None) -> StepRegistry:
    """仅含本地步骤的注册表"""
    registry = StepRegistry()
    registry.register(ExecHandler(executor))
    registry.register(RenderHandler(renderer or TemplateRenderer()))
    registry.register(PackageHandler())
    return registry
