"""服务容器：统一依赖注入，消除各层的裸构造

所有执行组件通过容器获取，同一容器内的实例共享（例如生命周期管理器持有的容器句柄）。
CLI 和 Web 层各自用显式的 Config 创建容器，不存在全局可变配置。

依赖关系图（→ 表示依赖）:
  runtime   → runner
  lifecycle → runtime
  health    → lifecycle
  steps     → runner, renderer, lifecycle, health
  每次运行的 StageExecutor / PipelineExecutor 由 pipeline_executor() 新建

用法:
    container = ServiceContainer(Config.from_file("configs/default.yml"))
    executor = container.pipeline_executor(run_ctx)
    report = executor.run(definition)

    # 测试中替换容器运行时
    container = ServiceContainer(cfg, runtime=FakeRuntime())
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

from stageflow.core.config import Config

if TYPE_CHECKING:
    from stageflow.core.collector import ArtifactCollector
    from stageflow.core.executor import CancelToken, PipelineExecutor
    from stageflow.core.history import HistoryManager
    from stageflow.core.hooks import PipelineHook
    from stageflow.core.reporter import RunReporter
    from stageflow.core.runner import CommandExecutor
    from stageflow.core.steps import RunContext, StepRegistry
    from stageflow.core.template import TemplateRenderer
    from stageflow.services.docker.health import HealthMonitor
    from stageflow.services.docker.lifecycle import ContainerLifecycleManager
    from stageflow.services.docker.runtime import ContainerRuntime

logger = logging.getLogger(__name__)


class ServiceContainer:
    """懒加载服务容器：每个实例持有一组共享的执行组件"""

    def __init__(
        self,
        config: Config | None = None,
        *,
        runner: CommandExecutor | None = None,
        runtime: ContainerRuntime | None = None,
    ) -> None:
        self._config = config or Config()
        self._instances: dict[str, object] = {}
        if runner is not None:
            self._instances["runner"] = runner
        if runtime is not None:
            self._instances["runtime"] = runtime

    @property
    def config(self) -> Config:
        return self._config

    @property
    def log_dir(self) -> Path:
        return Path(self._config.report_dir) / "logs"

    # ---- 执行层 ----

    @property
    def runner(self) -> CommandExecutor:
        if "runner" not in self._instances:
            from stageflow.core.runner import CommandRunner
            self._instances["runner"] = CommandRunner(default_timeout=self._config.default_timeout)
        return self._instances["runner"]  # type: ignore[return-value]

    @property
    def renderer(self) -> TemplateRenderer:
        if "renderer" not in self._instances:
            from stageflow.core.template import TemplateRenderer
            self._instances["renderer"] = TemplateRenderer(
                search_dirs=[str(Path(self._config.workspace_dir) / "templates")],
            )
        return self._instances["renderer"]  # type: ignore[return-value]

    @property
    def collector(self) -> ArtifactCollector:
        if "collector" not in self._instances:
            from stageflow.core.collector import ArtifactCollector
            self._instances["collector"] = ArtifactCollector(output_dir=self._config.artifact_dir)
        return self._instances["collector"]  # type: ignore[return-value]

    @property
    def reporter(self) -> RunReporter:
        if "reporter" not in self._instances:
            from stageflow.core.reporter import RunReporter
            self._instances["reporter"] = RunReporter(output_dir=self._config.report_dir)
        return self._instances["reporter"]  # type: ignore[return-value]

    @property
    def history(self) -> HistoryManager:
        if "history" not in self._instances:
            from stageflow.core.history import HistoryManager
            self._instances["history"] = HistoryManager(history_file=self._config.history_file)
        return self._instances["history"]  # type: ignore[return-value]

    # ---- 容器层 ----

    @property
    def runtime(self) -> ContainerRuntime:
        if "runtime" not in self._instances:
            from stageflow.core.runner import CommandRunner, NullSink
            from stageflow.services.docker.runtime import DockerCliRuntime
            self._instances["runtime"] = DockerCliRuntime(
                executor=CommandRunner(sink=NullSink()),
                cli=self._config.container_cli,
                env=self._config.command_env(),
            )
        return self._instances["runtime"]  # type: ignore[return-value]

    @property
    def lifecycle(self) -> ContainerLifecycleManager:
        if "lifecycle" not in self._instances:
            from stageflow.services.docker.lifecycle import ContainerLifecycleManager
            self._instances["lifecycle"] = ContainerLifecycleManager(self.runtime)
        return self._instances["lifecycle"]  # type: ignore[return-value]

    @property
    def health(self) -> HealthMonitor:
        if "health" not in self._instances:
            from stageflow.services.docker.health import HealthMonitor
            self._instances["health"] = HealthMonitor(self.lifecycle)
        return self._instances["health"]  # type: ignore[return-value]

    @property
    def steps(self) -> StepRegistry:
        if "steps" not in self._instances:
            from stageflow.core.steps import default_registry
            from stageflow.services.docker.steps import register_container_steps
            registry = default_registry(self.runner, self.renderer)
            register_container_steps(registry, self.lifecycle, self.health)
            self._instances["steps"] = registry
        return self._instances["steps"]  # type: ignore[return-value]

    # ---- 每次运行新建 ----

    def default_hooks(self) -> list[PipelineHook]:
        from stageflow.core.hooks import ContainerLogsHook, SummaryHook
        return [
            SummaryHook(),
            ContainerLogsHook(
                self.lifecycle, self.log_dir,
                container=self._config.dump_logs_container,
                tail=self._config.log_tail_lines,
            ),
        ]

    def pipeline_executor(
        self,
        run: RunContext,
        *,
        cancel_token: CancelToken | None = None,
        hooks: list[PipelineHook] | None = None,
    ) -> PipelineExecutor:
        from stageflow.core.executor import PipelineExecutor
        from stageflow.core.scheduler import GroupScheduler
        from stageflow.core.stage import StageExecutor

        stage_executor = StageExecutor(self.steps, self.collector, run, log_dir=self.log_dir)
        return PipelineExecutor(
            stage_executor,
            GroupScheduler(stage_executor),
            self.reporter,
            run,
            hooks=self.default_hooks() if hooks is None else hooks,
            cancel_token=cancel_token,
        )
