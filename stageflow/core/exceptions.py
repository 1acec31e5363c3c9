"""统一异常体系

所有业务异常继承 StageflowError，每个子类带一个稳定的 code，
CLI 层据此映射进程退出码，Web 层据此映射 HTTP 状态码。

注意：命令非零退出不是异常，由 CommandResult 承载；
这里只定义执行器无法用结果值表达的错误。
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from stageflow.core.models import Artifact, CommandResult


class StageflowError(Exception):
    """框架基础异常"""

    code: str = "UNKNOWN"

    def __init__(self, message: str) -> None:
        super().__init__(message)


class ConfigError(StageflowError):
    """配置文件缺失或内容无效"""

    code = "CONFIG_ERROR"


class ValidationError(StageflowError):
    """流水线定义校验失败"""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: list[str] | None = None) -> None:
        super().__init__(message)
        self.details = details or []


class ExecutionError(StageflowError):
    """外部命令执行失败"""

    code = "EXECUTION_ERROR"


class ArtifactMissingError(StageflowError):
    """必需的产物模式没有匹配到任何文件"""

    code = "ARTIFACT_MISSING_REQUIRED"

    def __init__(
        self, missing: list[str], artifacts: list[Artifact] | None = None,
    ) -> None:
        super().__init__(f"必需产物缺失: {', '.join(missing)}")
        self.missing = missing
        self.artifacts = artifacts or []


class ContainerUnreachableError(StageflowError):
    """无法连接容器运行时（docker 不存在或守护进程不可达）"""

    code = "CONTAINER_UNREACHABLE"


class ImageBuildError(ExecutionError):
    """镜像构建失败"""

    code = "IMAGE_BUILD_FAILED"

    def __init__(self, message: str, result: CommandResult) -> None:
        super().__init__(message)
        self.result = result


class DeployError(ExecutionError):
    """容器启动失败"""

    code = "DEPLOY_FAILED"

    def __init__(self, message: str, result: CommandResult) -> None:
        super().__init__(message)
        self.result = result


class ContainerOperationError(ExecutionError):
    """容器停止 / 删除失败（容器不存在除外）"""

    code = "CONTAINER_OP_FAILED"

    def __init__(self, message: str, result: CommandResult) -> None:
        super().__init__(message)
        self.result = result


class StageStateError(StageflowError):
    """阶段状态非法迁移（终态不可再变）"""

    code = "STAGE_STATE_ERROR"
