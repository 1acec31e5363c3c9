"""共享测试夹具：临时配置、内存容器运行时、假时钟"""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from stageflow.core.config import Config
from stageflow.core.models import (
    CommandResult,
    ContainerState,
    ContainerStatus,
    HealthState,
)


class FakeRuntime:
    """内存容器运行时，行为近似 docker CLI"""

    def __init__(self) -> None:
        self.containers: dict[str, ContainerStatus] = {}
        self.calls: list[tuple[str, ...]] = []
        self.health_on_start = HealthState.NONE
        self.health_sequence: list[HealthState] = []
        self.build_rc = 0
        self.run_rc = 0
        self.stop_rc = 0
        self.remove_rc = 0
        self.unreachable = False
        self.log_lines = ["server started", "listening on :8080"]

    def _check(self) -> None:
        if self.unreachable:
            from stageflow.core.exceptions import ContainerUnreachableError
            raise ContainerUnreachableError("Cannot connect to the Docker daemon")

    def build(self, context: str, tag: str, dockerfile: str = "") -> CommandResult:
        self._check()
        self.calls.append(("build", tag, context, dockerfile))
        if self.build_rc:
            return CommandResult(exit_code=self.build_rc, stderr="build failed")
        return CommandResult(exit_code=0, stdout=f"Successfully tagged {tag}\n")

    def run(
        self, name: str, image: str, *, restart_policy: str = "unless-stopped",
        ports: list[str] | None = None, env: dict[str, str] | None = None,
    ) -> CommandResult:
        self._check()
        self.calls.append(("run", name, image))
        if self.run_rc:
            return CommandResult(exit_code=self.run_rc, stderr="run failed")
        if name in self.containers:
            return CommandResult(exit_code=125, stderr=f"Conflict. The container name \"/{name}\" is already in use")
        self.containers[name] = ContainerStatus(
            state=ContainerState.RUNNING, health_state=self.health_on_start,
        )
        return CommandResult(exit_code=0, stdout="0123456789abcdef\n")

    def stop(self, name: str) -> CommandResult:
        self._check()
        self.calls.append(("stop", name))
        if self.stop_rc:
            return CommandResult(exit_code=self.stop_rc, stderr="cannot stop container: permission denied")
        if name in self.containers:
            self.containers[name].state = ContainerState.STOPPED
        return CommandResult(exit_code=0)

    def remove(self, name: str) -> CommandResult:
        self._check()
        self.calls.append(("remove", name))
        if self.remove_rc:
            return CommandResult(
                exit_code=self.remove_rc, stderr=f"removal of container {name} is already in progress",
            )
        self.containers.pop(name, None)
        return CommandResult(exit_code=0)

    def inspect(self, name: str) -> ContainerStatus:
        self._check()
        status = self.containers.get(name)
        if status is None:
            return ContainerStatus()
        if self.health_sequence:
            status.health_state = self.health_sequence.pop(0)
        return ContainerStatus(state=status.state, health_state=status.health_state)

    def logs(self, name: str, tail: int = 100) -> str:
        self._check()
        return "".join(f"{line}\n" for line in self.log_lines[-tail:])

    def stats(self, name: str) -> dict[str, Any]:
        return {"CPUPerc": "0.50%", "MemUsage": "10MiB / 1GiB"}

    def address(self, name: str) -> str:
        return "172.17.0.2"

    def running(self) -> list[str]:
        return [n for n, s in self.containers.items() if s.state == ContainerState.RUNNING]

    def ops(self, op: str) -> list[tuple[str, ...]]:
        return [c for c in self.calls if c[0] == op]


class FakeClock:
    """可控时钟：sleep 只推进时间"""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    ws = tmp_path / "ws"
    ws.mkdir()
    return ws


@pytest.fixture()
def config(tmp_path: Path, workspace: Path) -> Config:
    return Config(
        workspace_dir=str(workspace),
        artifact_dir=str(tmp_path / "artifacts"),
        report_dir=str(tmp_path / "reports"),
        history_file=str(tmp_path / "data" / "history.json"),
        pipelines_dir=str(tmp_path / "pipelines"),
        health_poll_interval=0.01,
        health_max_wait=0.05,
    )


@pytest.fixture()
def fake_runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture()
def fake_clock() -> FakeClock:
    return FakeClock()
