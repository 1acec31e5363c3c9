"""容器服务模块

- runtime.py: 容器运行时边界（DockerCliRuntime）
- lifecycle.py: 部署 / 停止 / 移除，同名容器唯一
- health.py: 健康轮询
- steps.py: 容器类流水线步骤
"""

from stageflow.services.docker.health import HealthMonitor
from stageflow.services.docker.lifecycle import ContainerLifecycleManager
from stageflow.services.docker.runtime import ContainerRuntime, DockerCliRuntime, parse_state
from stageflow.services.docker.steps import register_container_steps

__all__ = [
    "ContainerRuntime",
    "DockerCliRuntime",
    "parse_state",
    "ContainerLifecycleManager",
    "HealthMonitor",
    "register_container_steps",
]
