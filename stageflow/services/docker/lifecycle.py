"""容器生命周期管理

职责:
- 镜像构建 (build)
- 部署 (deploy)：先幂等地停止并删除同名旧容器，再创建并启动新容器
- 停止 / 删除 (stop / remove)：目标不存在时为空操作，其他失败抛 ContainerOperationError
- 状态查询 (inspect_state)：不存在返回 ABSENT 而不是报错
- 诊断 (logs / stats / address)

命名容器是单例外部资源，只允许经由本管理器修改。
"""

from __future__ import annotations

import logging
import threading
from typing import Any

from stageflow.core.exceptions import ContainerOperationError, DeployError, ImageBuildError
from stageflow.core.models import (
    CommandResult,
    ContainerHandle,
    ContainerState,
    ContainerStatus,
)
from stageflow.services.docker.runtime import ContainerRuntime, is_absent

logger = logging.getLogger(__name__)


class ContainerLifecycleManager:
    """容器生命周期管理器"""

    def __init__(self, runtime: ContainerRuntime) -> None:
        self.runtime = runtime
        self._handles: dict[str, ContainerHandle] = {}
        self._lock = threading.Lock()

    def build(self, image_ref: str, context: str = ".", dockerfile: str = "") -> None:
        """构建镜像，失败抛 ImageBuildError"""
        logger.info("构建镜像: %s (context=%s)", image_ref, context)
        result = self.runtime.build(context, image_ref, dockerfile)
        if result.exit_code != 0:
            raise ImageBuildError(
                f"镜像构建失败 {image_ref} (rc={result.exit_code}): {result.tail(300)}",
                result,
            )
        logger.info("镜像构建完成: %s", image_ref)

    def deploy(
        self, name: str, image_ref: str, restart_policy: str = "unless-stopped",
        *, ports: list[str] | None = None, env: dict[str, str] | None = None,
    ) -> ContainerHandle:
        """部署容器，重复调用结果一致：始终只留下一个同名运行中容器"""
        with self._lock:
            self._stop(name)
            self._remove(name)
            logger.info("启动容器: %s <- %s (restart=%s)", name, image_ref, restart_policy)
            result = self.runtime.run(
                name, image_ref, restart_policy=restart_policy, ports=ports, env=env,
            )
            if result.exit_code != 0:
                raise DeployError(
                    f"容器启动失败 {name} (rc={result.exit_code}): {result.tail(300)}",
                    result,
                )
            status = self.runtime.inspect(name)
            handle = ContainerHandle(
                name=name, image_ref=image_ref,
                state=status.state, health_state=status.health_state,
                container_id=result.stdout.strip()[:12],
            )
            self._handles[name] = handle
            return handle

    def stop(self, name: str) -> None:
        with self._lock:
            self._stop(name)

    def remove(self, name: str) -> None:
        with self._lock:
            self._remove(name)

    def _stop(self, name: str) -> None:
        status = self.runtime.inspect(name)
        if status.state != ContainerState.RUNNING:
            logger.debug("容器 %s 未运行 (%s)，跳过 stop", name, status.state.value)
            return
        result = self.runtime.stop(name)
        if is_absent(result):
            logger.debug("容器 %s 已不存在，跳过 stop", name)
            self._update(name, ContainerState.ABSENT)
            return
        self._check(result, "停止", name)
        self._update(name, ContainerState.STOPPED)
        logger.info("容器已停止: %s", name)

    def _remove(self, name: str) -> None:
        status = self.runtime.inspect(name)
        if status.state == ContainerState.ABSENT:
            logger.debug("容器 %s 不存在，跳过 remove", name)
            return
        result = self.runtime.remove(name)
        if not is_absent(result):
            self._check(result, "删除", name)
        self._update(name, ContainerState.REMOVED)
        logger.info("容器已删除: %s", name)

    @staticmethod
    def _check(result: CommandResult, action: str, name: str) -> None:
        if result.exit_code != 0:
            raise ContainerOperationError(
                f"容器{action}失败 {name} (rc={result.exit_code}): {result.tail(300).strip()}",
                result,
            )

    def _update(self, name: str, state: ContainerState) -> None:
        handle = self._handles.get(name)
        if handle is not None:
            handle.state = state

    def inspect_state(self, name: str) -> ContainerStatus:
        """查询状态，不存在返回 ABSENT"""
        status = self.runtime.inspect(name)
        handle = self._handles.get(name)
        if handle is not None:
            handle.state = status.state
            handle.health_state = status.health_state
        return status

    def get_handle(self, name: str) -> ContainerHandle | None:
        return self._handles.get(name)

    def logs(self, name: str, tail: int = 100) -> str:
        return self.runtime.logs(name, tail)

    def snapshot(self, name: str) -> dict[str, Any]:
        """诊断快照：状态 + 网络地址 + 资源占用"""
        status = self.inspect_state(name)
        info: dict[str, Any] = {
            "name": name,
            "state": status.state.value,
            "health_state": status.health_state.value,
        }
        handle = self._handles.get(name)
        if handle is not None:
            info["image_ref"] = handle.image_ref
            info["container_id"] = handle.container_id
        if status.state == ContainerState.RUNNING:
            info["address"] = self.runtime.address(name)
            info["stats"] = self.runtime.stats(name)
        return info
