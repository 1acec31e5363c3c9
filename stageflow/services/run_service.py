"""运行服务：加载定义 → 执行 → 持久化报告与历史

CLI 与 Web 共用的流水线入口。
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone

from stageflow.core.definition import load_definition
from stageflow.core.exceptions import ValidationError
from stageflow.core.executor import CancelToken
from stageflow.core.models import PipelineDefinition, RunReport
from stageflow.core.steps import RunContext
from stageflow.services.container import ServiceContainer

logger = logging.getLogger(__name__)


def new_build_id() -> str:
    """生成构建号: 时间戳 + 短随机后缀"""
    stamp = datetime.now(tz=timezone.utc).strftime("%Y%m%d-%H%M%S")
    return f"{stamp}-{uuid.uuid4().hex[:6]}"


@dataclass
class RunRequest:
    """一次流水线运行请求"""

    definition: str
    params: dict[str, str] = field(default_factory=dict)
    build_id: str = ""
    formats: tuple[str, ...] = ()
    cancel_token: CancelToken | None = None


class RunService:
    """流水线运行服务"""

    def __init__(self, container: ServiceContainer) -> None:
        self.c = container

    def load(self, definition: str, params: dict[str, str] | None = None) -> PipelineDefinition:
        """加载并按已注册的步骤类型校验定义"""
        loaded = load_definition(definition, params)
        errors = [
            f"{stage.name}: {err}"
            for stage in loaded.stages()
            for spec in stage.commands
            for step in (spec, *spec.provision)
            for err in self.c.steps.validate(step)
        ]
        if errors:
            raise ValidationError(f"流水线定义无效: {definition}", errors)
        return loaded

    def execute(self, req: RunRequest) -> RunReport:
        """执行流水线并写出报告、记录历史"""
        build_id = req.build_id or new_build_id()
        definition = self.load(req.definition, {**req.params, "build_id": build_id})
        run = RunContext(
            config=self.c.config,
            build_id=build_id,
            pipeline=definition.name,
            params=dict(definition.params),
            env=dict(definition.env),
        )
        executor = self.c.pipeline_executor(run, cancel_token=req.cancel_token)
        report = executor.run(definition)
        self.c.reporter.write(report, req.formats or self.c.config.report_formats)
        self.c.history.record_run(report)
        return report
