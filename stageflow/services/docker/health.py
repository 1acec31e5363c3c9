"""容器健康监视器

按固定间隔轮询 inspect_state，直到容器进入运行态
（镜像声明了 HEALTHCHECK 时还需达到 healthy）或等待超时。
超时只返回事实报告，不抛异常：不同部署场景对健康失败的处理不同，
由阶段的 unhealthy_policy 决定严重性。
"""

from __future__ import annotations

import logging
import time
from typing import Callable

from stageflow.core.models import (
    ContainerState,
    ContainerStatus,
    HealthReport,
    HealthState,
    HealthVerdict,
)
from stageflow.services.docker.lifecycle import ContainerLifecycleManager

logger = logging.getLogger(__name__)


def _ready(status: ContainerStatus) -> bool:
    if status.state != ContainerState.RUNNING:
        return False
    return status.health_state in (HealthState.NONE, HealthState.HEALTHY)


class HealthMonitor:
    """健康轮询器（时钟与 sleep 可注入，便于测试）"""

    def __init__(
        self,
        lifecycle: ContainerLifecycleManager,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.lifecycle = lifecycle
        self._clock = clock
        self._sleep = sleep

    def wait_healthy(
        self, name: str, poll_interval: float = 2.0, max_wait: float = 60.0,
    ) -> HealthReport:
        start = self._clock()
        deadline = start + max(0.0, max_wait)
        polls = 0
        status = ContainerStatus()

        while True:
            status = self.lifecycle.inspect_state(name)
            polls += 1
            if _ready(status):
                waited = self._clock() - start
                logger.info(
                    "容器健康: %s (state=%s, health=%s, %.1fs, %d 次轮询)",
                    name, status.state.value, status.health_state.value, waited, polls,
                )
                return HealthReport(
                    container=name, verdict=HealthVerdict.HEALTHY,
                    state=status.state, health_state=status.health_state,
                    waited=waited, polls=polls, message="容器运行正常",
                )
            now = self._clock()
            if now >= deadline:
                break
            self._sleep(min(poll_interval, deadline - now))

        waited = self._clock() - start
        if status.state == ContainerState.RUNNING:
            verdict = HealthVerdict.UNHEALTHY
            message = f"容器运行中但健康状态为 {status.health_state.value}"
        else:
            verdict = HealthVerdict.NOT_RUNNING
            message = f"容器未运行 (state={status.state.value})"
        logger.warning("健康检查超时 %s: %s (%.1fs)", name, message, waited)
        return HealthReport(
            container=name, verdict=verdict,
            state=status.state, health_state=status.health_state,
            waited=waited, polls=polls, message=message,
        )
