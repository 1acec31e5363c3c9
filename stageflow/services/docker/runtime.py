"""容器运行时边界

ContainerRuntime 协议只暴露流水线需要的窄能力：
build / run / stop / remove / inspect / logs / stats / address。
默认实现 DockerCliRuntime 通过 CommandExecutor 调用 docker 命令行，
测试中可替换为内存实现。
"""

from __future__ import annotations

import json
import logging
from typing import Any, Protocol

from stageflow.core.exceptions import ContainerUnreachableError
from stageflow.core.models import (
    CommandResult,
    CommandSpec,
    ContainerState,
    ContainerStatus,
    HealthState,
)
from stageflow.core.runner import CommandExecutor, CommandRunner, NullSink

logger = logging.getLogger(__name__)

_UNREACHABLE_MARKERS = (
    "cannot connect to the docker daemon",
    "is the docker daemon running",
    "error during connect",
    "permission denied while trying to connect",
)
_ABSENT_MARKERS = ("no such object", "no such container")

_STATE_MAP = {
    "created": ContainerState.CREATED,
    "restarting": ContainerState.CREATED,
    "running": ContainerState.RUNNING,
    "paused": ContainerState.STOPPED,
    "exited": ContainerState.STOPPED,
    "dead": ContainerState.STOPPED,
    "removing": ContainerState.REMOVED,
}
_HEALTH_MAP = {
    "starting": HealthState.STARTING,
    "healthy": HealthState.HEALTHY,
    "unhealthy": HealthState.UNHEALTHY,
}


class ContainerRuntime(Protocol):
    """容器运行时能力协议"""

    def build(self, context: str, tag: str, dockerfile: str = "") -> CommandResult: ...

    def run(
        self, name: str, image: str, *,
        restart_policy: str = "unless-stopped",
        ports: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult: ...

    def stop(self, name: str) -> CommandResult: ...

    def remove(self, name: str) -> CommandResult: ...

    def inspect(self, name: str) -> ContainerStatus: ...

    def logs(self, name: str, tail: int = 100) -> str: ...

    def stats(self, name: str) -> dict[str, Any]: ...

    def address(self, name: str) -> str: ...


def is_absent(result: CommandResult) -> bool:
    """命令失败原因是目标容器不存在"""
    lowered = result.stderr.lower()
    return result.exit_code != 0 and any(m in lowered for m in _ABSENT_MARKERS)


def parse_state(state: dict[str, Any]) -> ContainerStatus:
    """把 docker inspect 的 .State JSON 映射为 ContainerStatus"""
    status = str(state.get("Status", "")).lower()
    health = state.get("Health") or {}
    return ContainerStatus(
        state=_STATE_MAP.get(status, ContainerState.CREATED),
        health_state=_HEALTH_MAP.get(str(health.get("Status", "")).lower(), HealthState.NONE),
        exit_code=state.get("ExitCode"),
        started_at=str(state.get("StartedAt", "")),
    )


class DockerCliRuntime:
    """基于 docker CLI 的运行时实现"""

    def __init__(
        self, executor: CommandExecutor | None = None, cli: str = "docker",
        env: dict[str, str] | None = None, timeout: float | None = 600,
    ) -> None:
        self.executor = executor or CommandRunner(sink=NullSink())
        self.cli = cli
        self.env = env
        self.timeout = timeout

    def _call(self, *args: str, label: str = "", timeout: float | None = None) -> CommandResult:
        spec = CommandSpec(
            command=[self.cli, *args],
            name=label or f"{self.cli} {args[0]}",
            timeout=timeout if timeout is not None else self.timeout,
        )
        result = self.executor.run(spec, ".", self.env, label=spec.name)
        if result.tool_missing:
            raise ContainerUnreachableError(f"容器运行时不可用: {self.cli} 未安装")
        lowered = result.stderr.lower()
        if result.exit_code != 0 and any(m in lowered for m in _UNREACHABLE_MARKERS):
            raise ContainerUnreachableError(f"无法连接容器运行时: {result.tail(200).strip()}")
        return result

    def build(self, context: str, tag: str, dockerfile: str = "") -> CommandResult:
        args = ["build", "-t", tag]
        if dockerfile:
            args += ["-f", dockerfile]
        args.append(context)
        return self._call(*args, label=f"{self.cli} build {tag}")

    def run(
        self, name: str, image: str, *,
        restart_policy: str = "unless-stopped",
        ports: list[str] | None = None,
        env: dict[str, str] | None = None,
    ) -> CommandResult:
        args = ["run", "-d", "--name", name, "--restart", restart_policy]
        for port in ports or []:
            args += ["-p", port]
        for key, value in (env or {}).items():
            args += ["-e", f"{key}={value}"]
        args.append(image)
        return self._call(*args, label=f"{self.cli} run {name}")

    def stop(self, name: str) -> CommandResult:
        return self._call("stop", name)

    def remove(self, name: str) -> CommandResult:
        return self._call("rm", "-f", name)

    def inspect(self, name: str) -> ContainerStatus:
        result = self._call("inspect", "--format", "{{json .State}}", name, timeout=30)
        if result.exit_code != 0:
            return ContainerStatus()
        try:
            state = json.loads(result.stdout.strip() or "{}")
        except json.JSONDecodeError:
            logger.warning("无法解析 inspect 输出: %s", result.stdout[:200])
            return ContainerStatus(state=ContainerState.CREATED)
        return parse_state(state)

    def logs(self, name: str, tail: int = 100) -> str:
        result = self._call("logs", "--tail", str(tail), name, timeout=60)
        if result.exit_code != 0:
            return ""
        # docker logs 把容器 stderr 输出到 stderr，这里合并
        return result.stdout + result.stderr

    def stats(self, name: str) -> dict[str, Any]:
        result = self._call("stats", "--no-stream", "--format", "{{json .}}", name, timeout=60)
        if result.exit_code != 0:
            return {}
        try:
            data = json.loads(result.stdout.strip().splitlines()[0])
        except (json.JSONDecodeError, IndexError):
            return {}
        return data if isinstance(data, dict) else {}

    def address(self, name: str) -> str:
        result = self._call(
            "inspect", "--format",
            "{{range .NetworkSettings.Networks}}{{.IPAddress}}{{end}}", name,
            timeout=30,
        )
        return result.stdout.strip() if result.exit_code == 0 else ""
