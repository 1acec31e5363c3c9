"""集中配置管理

提供统一的配置入口，支持从 YAML 文件加载 + 编程式覆盖。
配置是不可变值：由 CLI / Web 入口创建后显式传给 ServiceContainer，
再由执行器传给每一次命令调用，不存在进程级可变全局状态。
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from typing import Any

import yaml

from stageflow.core.exceptions import ConfigError
from stageflow.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

# 非交互标记变量，与交付镜像中的 ENV 保持一致
DEFAULT_ENV_OVERLAY = {
    "JENKINS_HOME": "/tmp",
    "DEBIAN_FRONTEND": "noninteractive",
}


@dataclass(frozen=True)
class Config:
    """框架全局配置（不可变）"""

    # 目录
    workspace_dir: str = "."
    artifact_dir: str = "artifacts"
    report_dir: str = "reports"
    history_file: str = "data/history.json"
    pipelines_dir: str = "pipelines"

    # 执行
    inherit_env: bool = True
    env_overlay: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_ENV_OVERLAY))
    extra_path: tuple[str, ...] = ("/usr/local/bin",)
    default_timeout: float | None = None
    report_formats: tuple[str, ...] = ("text", "json")

    # 容器
    container_cli: str = "docker"
    health_poll_interval: float = 2.0
    health_max_wait: float = 60.0
    log_tail_lines: int = 100
    dump_logs_container: str = ""  # 致命失败时抓取日志的容器名

    # 自定义扩展 (放不到字段里的配置项)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_file(cls, path: str = "configs/default.yml") -> Config:
        """从 YAML 文件加载配置，不存在则返回默认"""
        try:
            data = load_yaml(path)
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"配置文件无法解析: {path}: {e}") from e
        if not data:
            return cls()
        known = {f.name for f in fields(cls)}
        matched = {k: v for k, v in data.items() if k in known and k != "extra"}
        extra = {k: v for k, v in data.items() if k not in known}
        for key in ("extra_path", "report_formats"):
            if key in matched:
                value = matched[key]
                matched[key] = (value,) if isinstance(value, str) else tuple(value)
        if "env_overlay" in matched:
            overlay = matched["env_overlay"]
            if not isinstance(overlay, dict):
                raise ConfigError(f"env_overlay 必须是映射: {path}")
            matched["env_overlay"] = {
                **DEFAULT_ENV_OVERLAY, **{str(k): str(v) for k, v in overlay.items()},
            }
        try:
            cfg = cls(**matched, extra=extra)
        except TypeError as e:
            raise ConfigError(f"配置文件无效: {path}: {e}") from e
        logger.info("配置已加载: %s", path)
        return cfg

    def with_overrides(self, **changes: Any) -> Config:
        """返回应用了覆盖项的新配置"""
        return replace(self, **{k: v for k, v in changes.items() if v is not None})

    def command_env(self, *overlays: dict[str, str]) -> dict[str, str]:
        """计算一次命令调用的完整环境

        继承环境（可关闭）→ 配置覆盖层 → 调用方覆盖层，最后扩充 PATH。
        """
        env: dict[str, str] = dict(os.environ) if self.inherit_env else {}
        env.update(self.env_overlay)
        for overlay in overlays:
            env.update({k: str(v) for k, v in overlay.items()})
        path_parts = [p for p in env.get("PATH", "").split(os.pathsep) if p]
        for extra in self.extra_path:
            expanded = os.path.expanduser(extra)
            if expanded not in path_parts:
                path_parts.append(expanded)
        env["PATH"] = os.pathsep.join(path_parts)
        return env

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
