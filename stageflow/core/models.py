"""核心数据模型

所有核心数据类集中定义，消除 runner ↔ stage ↔ executor 的循环依赖。
其他模块统一从此处导入 Stage / ParallelGroup / CommandResult 及容器领域实体。
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Any, Union

from stageflow.core.exceptions import StageStateError

# 超时退出码标记，不与任何真实进程退出码（0..255 或信号取负）重叠
TIMED_OUT_EXIT_CODE = -1000
# 工具不存在时沿用 shell 约定
TOOL_MISSING_EXIT_CODE = 127


# =========================================================================
# 枚举
# =========================================================================


class FailurePolicy(str, Enum):
    """阶段失败策略"""
    FATAL = "fatal"
    TOLERANT = "tolerant"


class StageStatus(str, Enum):
    """阶段 / 命令状态"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def terminal(self) -> bool:
        return self in (StageStatus.SUCCEEDED, StageStatus.FAILED, StageStatus.SKIPPED)


class PipelineState(str, Enum):
    """流水线顶层状态机"""
    NOT_STARTED = "not_started"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class ContainerState(str, Enum):
    """容器生命周期状态"""
    ABSENT = "absent"
    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    REMOVED = "removed"


class HealthState(str, Enum):
    """容器健康信号"""
    NONE = "none"
    STARTING = "starting"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"


class ExitCode(IntEnum):
    """进程退出码约定"""
    SUCCESS = 0
    STAGE_FAILED = 1
    INFRA_ERROR = 2
    INVALID_DEFINITION = 3
    CANCELLED = 130


class ErrorCode:
    """命令结果上的错误分类码"""
    TIMED_OUT = "TIMED_OUT"
    TOOL_UNAVAILABLE = "TOOL_UNAVAILABLE"
    CONTAINER_UNREACHABLE = "CONTAINER_UNREACHABLE"
    ARTIFACT_MISSING_REQUIRED = "ARTIFACT_MISSING_REQUIRED"
    INTERNAL_ERROR = "INTERNAL_ERROR"
    CANCELLED = "CANCELLED"


# =========================================================================
# 命令
# =========================================================================


@dataclass
class CommandSpec:
    """单条命令（或内置步骤）定义

    kind:
      - exec: 外部命令（默认）
      - render / image_build / deploy / health_check /
        container_logs / container_cleanup / package: 内置步骤，参数在 options 中
    """

    command: str | list[str] = ""
    kind: str = "exec"
    name: str = ""
    shell: bool = False
    best_effort: bool = False
    probe: bool = False          # 工具探测命令，总是 best-effort
    timeout: float | None = None  # 秒
    cwd: str = ""                # 相对阶段工作目录
    env: dict[str, str] = field(default_factory=dict)
    provision: list[CommandSpec] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.kind != "exec":
            return self.kind
        if isinstance(self.command, list):
            return " ".join(self.command)
        return self.command

    @property
    def always_best_effort(self) -> bool:
        """探测命令和日志抓取不受阶段策略影响"""
        return self.best_effort or self.probe or self.kind == "container_logs"


@dataclass(frozen=True)
class CommandResult:
    """命令执行结果（产生后不可变）"""

    exit_code: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0
    timed_out: bool = False
    tool_missing: bool = False
    error: str = ""

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    def tail(self, limit: int = 500) -> str:
        """错误摘要：优先 stderr 尾部"""
        text = self.stderr or self.stdout
        return text[-limit:]


@dataclass
class CommandRecord:
    """阶段内单条命令的执行记录，供报告使用"""

    label: str
    status: StageStatus = StageStatus.PENDING
    best_effort: bool = False
    exit_code: int | None = None
    duration_ms: int = 0
    error: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "label": self.label,
            "status": self.status.value,
            "best_effort": self.best_effort,
            "exit_code": self.exit_code,
            "duration_ms": self.duration_ms,
            "error": self.error,
        }


# =========================================================================
# 产物
# =========================================================================


@dataclass(frozen=True)
class ArtifactSpec:
    """产物收集规则：glob 模式 + 是否允许为空"""

    pattern: str
    allow_empty: bool = False


@dataclass(frozen=True)
class Artifact:
    """已收集的产物文件"""

    path: str
    size_bytes: int
    produced_by: str


# =========================================================================
# 阶段与并行组
# =========================================================================


@dataclass
class Stage:
    """流水线原子工作单元

    生命周期: pending → running → (succeeded | failed | skipped)，终态不可再变。
    """

    name: str
    commands: list[CommandSpec] = field(default_factory=list)
    failure_policy: FailurePolicy = FailurePolicy.FATAL
    artifact_specs: list[ArtifactSpec] = field(default_factory=list)
    work_dir: str = ""
    env: dict[str, str] = field(default_factory=dict)
    group: str = ""

    status: StageStatus = StageStatus.PENDING
    records: list[CommandRecord] = field(default_factory=list)
    artifacts: list[Artifact] = field(default_factory=list)
    duration: float = 0.0  # 秒
    message: str = ""
    degraded: list[str] = field(default_factory=list)  # 缺失的工具
    forced_fatal: bool = False
    error_code: str = ""
    _started: float = field(default=0.0, repr=False, compare=False)

    def start(self) -> None:
        if self.status != StageStatus.PENDING:
            raise StageStateError(f"阶段 {self.name} 状态为 {self.status.value}，无法启动")
        self.status = StageStatus.RUNNING
        self._started = time.monotonic()

    def finish(self, status: StageStatus, message: str = "") -> None:
        if self.status.terminal:
            raise StageStateError(f"阶段 {self.name} 已处于终态 {self.status.value}")
        if not status.terminal:
            raise StageStateError(f"{status.value} 不是终态")
        self.status = status
        if message:
            self.message = message
        if self._started:
            self.duration = time.monotonic() - self._started

    @property
    def failed(self) -> bool:
        return self.status == StageStatus.FAILED

    @property
    def fatal(self) -> bool:
        """是否为致命失败（会中断流水线）"""
        return self.failed and (
            self.failure_policy == FailurePolicy.FATAL or self.forced_fatal
        )

    @property
    def outcome(self) -> str:
        """报告中展示的结果，例如 'failed (tolerant)'"""
        if not self.failed:
            return self.status.value
        return "failed (fatal)" if self.fatal else "failed (tolerant)"


@dataclass
class ParallelGroup:
    """并发执行的阶段集合，带汇合屏障"""

    name: str
    members: list[Stage] = field(default_factory=list)
    status: StageStatus = StageStatus.PENDING
    duration: float = 0.0

    @property
    def fatal(self) -> bool:
        return any(m.fatal for m in self.members)

    def resolve_status(self) -> StageStatus:
        """成员全部终态后计算组状态：任一成员致命失败则组失败"""
        return StageStatus.FAILED if self.fatal else StageStatus.SUCCEEDED


Unit = Union[Stage, ParallelGroup]


@dataclass
class PipelineDefinition:
    """已加载的流水线定义"""

    name: str
    units: list[Unit] = field(default_factory=list)
    params: dict[str, str] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    source: str = ""

    def stages(self) -> list[Stage]:
        """按声明顺序展开所有阶段"""
        result: list[Stage] = []
        for unit in self.units:
            if isinstance(unit, ParallelGroup):
                result.extend(unit.members)
            else:
                result.append(unit)
        return result


# =========================================================================
# 容器领域模型
# =========================================================================


@dataclass
class ContainerStatus:
    """inspect 快照"""

    state: ContainerState = ContainerState.ABSENT
    health_state: HealthState = HealthState.NONE
    exit_code: int | None = None
    started_at: str = ""


@dataclass
class ContainerHandle:
    """受管容器句柄，仅由 ContainerLifecycleManager 修改"""

    name: str
    image_ref: str = ""
    state: ContainerState = ContainerState.ABSENT
    health_state: HealthState = HealthState.NONE
    container_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "image_ref": self.image_ref,
            "state": self.state.value,
            "health_state": self.health_state.value,
            "container_id": self.container_id,
        }


class HealthVerdict(str, Enum):
    """健康检查事实结论"""
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NOT_RUNNING = "not_running"


@dataclass
class HealthReport:
    """健康检查报告：只报告事实，不做严重性判断"""

    container: str
    verdict: HealthVerdict
    state: ContainerState = ContainerState.ABSENT
    health_state: HealthState = HealthState.NONE
    waited: float = 0.0
    polls: int = 0
    message: str = ""

    @property
    def healthy(self) -> bool:
        return self.verdict == HealthVerdict.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "container": self.container,
            "verdict": self.verdict.value,
            "state": self.state.value,
            "health_state": self.health_state.value,
            "waited": round(self.waited, 3),
            "polls": self.polls,
            "message": self.message,
        }


# =========================================================================
# 运行报告
# =========================================================================


@dataclass
class ReportEntry:
    """报告中的单个阶段条目"""

    name: str
    status: StageStatus
    policy: FailurePolicy
    fatal: bool = False
    group: str = ""
    artifacts: list[Artifact] = field(default_factory=list)
    duration: float = 0.0
    message: str = ""
    degraded: list[str] = field(default_factory=list)
    commands: list[CommandRecord] = field(default_factory=list)
    error_code: str = ""

    @property
    def outcome(self) -> str:
        if self.status != StageStatus.FAILED:
            return self.status.value
        return "failed (fatal)" if self.fatal else "failed (tolerant)"


@dataclass
class RunReport:
    """一次流水线运行的完整报告"""

    pipeline: str
    build_id: str
    timestamp: str
    verdict: PipelineState
    entries: list[ReportEntry] = field(default_factory=list)
    container: dict[str, Any] = field(default_factory=dict)
    diagnostics: dict[str, str] = field(default_factory=dict)
    cancelled: bool = False
    duration: float = 0.0
    outputs: list[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.verdict == PipelineState.SUCCEEDED

    @property
    def tolerated_failures(self) -> list[str]:
        return [e.name for e in self.entries if e.status == StageStatus.FAILED and not e.fatal]

    @property
    def exit_code(self) -> ExitCode:
        if self.success:
            return ExitCode.SUCCESS
        if self.cancelled:
            return ExitCode.CANCELLED
        fatal = [e for e in self.entries if e.fatal]
        if any(e.error_code == ErrorCode.CONTAINER_UNREACHABLE for e in fatal):
            return ExitCode.INFRA_ERROR
        return ExitCode.STAGE_FAILED

    def entry(self, name: str) -> ReportEntry | None:
        for e in self.entries:
            if e.name == name:
                return e
        return None
