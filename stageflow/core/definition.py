"""流水线定义加载与校验

定义文件格式（YAML）:
  name: casino-game
  params: {image: casino-game}        # {key} 占位符替换
  env: {CMAKE_BUILD_TYPE: Release}    # 所有阶段共享的环境覆盖
  units:
    - name: Build
      policy: fatal                   # fatal | tolerant（默认 fatal）
      work_dir: .
      commands:
        - "cmake -S . -B build"       # 字符串 = shell 命令
        - {run: "cppcheck --version", probe: true}
        - {argv: [make, -j4], timeout: 600, best_effort: true}
        - {render: {template: templates/Dockerfile.j2, output: Dockerfile}}
      artifacts:
        - "build/casino_game"
        - {pattern: "reports/*.xml", allow_empty: true}
    - name: Quality
      parallel:
        - {name: StaticAnalysis, policy: tolerant, commands: [...]}
        - {name: Flawfinder, policy: tolerant, commands: [...]}
    - name: HealthCheck
      unhealthy_policy: tolerant      # 含 health_check 步骤时必填
      commands:
        - {health_check: {container: casino-app, max_wait: 30}}

所有错误收集后一次性抛出 ValidationError（details 为逐条说明）。
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

import yaml

from stageflow.core.exceptions import ConfigError, ValidationError
from stageflow.core.models import (
    ArtifactSpec,
    CommandSpec,
    FailurePolicy,
    ParallelGroup,
    PipelineDefinition,
    Stage,
    Unit,
)
from stageflow.utils.yaml_io import load_yaml

logger = logging.getLogger(__name__)

BUILTIN_STEPS = (
    "render", "image_build", "deploy", "health_check",
    "container_logs", "container_cleanup", "package",
)
_STAGE_KEYS = {"name", "policy", "commands", "artifacts", "work_dir", "env", "unhealthy_policy"}
_COMMAND_KEYS = {
    "run", "argv", "name", "shell", "best_effort", "probe",
    "timeout", "cwd", "env", "provision", *BUILTIN_STEPS,
}


def substitute(value: Any, params: dict[str, str]) -> Any:
    """递归替换字符串中的 {key} 占位符"""
    if isinstance(value, str):
        for k, v in params.items():
            value = value.replace(f"{{{k}}}", str(v))
        return value
    if isinstance(value, list):
        return [substitute(v, params) for v in value]
    if isinstance(value, dict):
        return {k: substitute(v, params) for k, v in value.items()}
    return value


def _policy(value: Any, where: str, errors: list[str]) -> FailurePolicy | None:
    try:
        return FailurePolicy(str(value).lower())
    except ValueError:
        errors.append(f"{where}: 未知失败策略 '{value}'（可用: fatal, tolerant）")
        return None


class DefinitionLoader:
    """把 YAML 数据解析为 PipelineDefinition"""

    def __init__(self, params: dict[str, str] | None = None) -> None:
        self.params = dict(params or {})
        self.errors: list[str] = []
        self._names: set[str] = set()

    def _unique(self, name: str, where: str) -> None:
        if name in self._names:
            self.errors.append(f"{where}: 名称重复 '{name}'")
        self._names.add(name)

    def parse(self, data: dict[str, Any], source: str = "") -> PipelineDefinition:
        self.errors = []
        self._names = set()
        name = str(data.get("name") or Path(source).stem or "pipeline")
        params = {str(k): str(v) for k, v in (data.get("params") or {}).items()}
        params.update(self.params)
        params.setdefault("pipeline", name)
        params = {k: substitute(v, params) for k, v in params.items()}
        data = substitute(data, params)

        units_data = data.get("units")
        if not isinstance(units_data, list) or not units_data:
            raise ValidationError(f"流水线定义无效: {source}", ["units 必须是非空列表"])

        units: list[Unit] = []
        for i, raw in enumerate(units_data):
            where = f"units[{i}]"
            if not isinstance(raw, dict):
                self.errors.append(f"{where}: 必须是映射")
                continue
            if "parallel" in raw:
                group = self._parse_group(raw, where)
                if group is not None:
                    units.append(group)
            else:
                stage = self._parse_stage(raw, where)
                if stage is not None:
                    units.append(stage)

        if self.errors:
            raise ValidationError(f"流水线定义无效: {source or name}", self.errors)
        env = {str(k): str(v) for k, v in (data.get("env") or {}).items()}
        return PipelineDefinition(name=name, units=units, params=params, env=env, source=source)

    def _parse_group(self, raw: dict[str, Any], where: str) -> ParallelGroup | None:
        name = str(raw.get("name", "")).strip()
        if not name:
            self.errors.append(f"{where}: 并行组缺少 name")
            return None
        self._unique(name, where)
        members_data = raw.get("parallel")
        if not isinstance(members_data, list) or not members_data:
            self.errors.append(f"{where} ({name}): parallel 必须是非空列表")
            return None
        members: list[Stage] = []
        for j, m in enumerate(members_data):
            mwhere = f"{where}.parallel[{j}]"
            if not isinstance(m, dict) or "parallel" in m:
                self.errors.append(f"{mwhere}: 并行组成员必须是阶段（不支持嵌套）")
                continue
            stage = self._parse_stage(m, mwhere)
            if stage is not None:
                stage.group = name
                members.append(stage)
        return ParallelGroup(name=name, members=members)

    def _parse_stage(self, raw: dict[str, Any], where: str) -> Stage | None:
        name = str(raw.get("name", "")).strip()
        if not name:
            self.errors.append(f"{where}: 阶段缺少 name")
            return None
        where = f"{where} ({name})"
        self._unique(name, where)
        for key in sorted(set(raw) - _STAGE_KEYS):
            self.errors.append(f"{where}: 未知字段 '{key}'")

        policy = FailurePolicy.FATAL
        if "policy" in raw:
            policy = _policy(raw["policy"], where, self.errors) or FailurePolicy.FATAL

        commands = [
            c for c in (
                self._parse_command(item, f"{where}.commands[{k}]")
                for k, item in enumerate(raw.get("commands") or [])
            ) if c is not None
        ]

        # 健康检查失败的严重性必须显式声明
        if any(c.kind == "health_check" for c in commands):
            if "unhealthy_policy" not in raw:
                self.errors.append(f"{where}: 含 health_check 步骤时必须声明 unhealthy_policy")
            else:
                unhealthy = _policy(raw["unhealthy_policy"], where, self.errors)
                if unhealthy is not None:
                    if "policy" in raw and unhealthy != policy:
                        self.errors.append(f"{where}: policy 与 unhealthy_policy 冲突")
                    policy = unhealthy
        elif "unhealthy_policy" in raw:
            self.errors.append(f"{where}: unhealthy_policy 仅适用于含 health_check 的阶段")

        return Stage(
            name=name,
            commands=commands,
            failure_policy=policy,
            artifact_specs=self._parse_artifacts(raw.get("artifacts") or [], where),
            work_dir=str(raw.get("work_dir", "")),
            env={str(k): str(v) for k, v in (raw.get("env") or {}).items()},
        )

    def _parse_command(self, item: Any, where: str) -> CommandSpec | None:
        if isinstance(item, str):
            if not item.strip():
                self.errors.append(f"{where}: 命令为空")
                return None
            return CommandSpec(command=item, shell=True)
        if not isinstance(item, dict):
            self.errors.append(f"{where}: 命令必须是字符串或映射")
            return None
        for key in sorted(set(item) - _COMMAND_KEYS):
            self.errors.append(f"{where}: 未知字段 '{key}'")

        kinds = [k for k in BUILTIN_STEPS if k in item]
        forms = len(kinds) + int("run" in item) + int("argv" in item)
        if forms != 1:
            self.errors.append(f"{where}: 必须且只能指定 run / argv 或一种内置步骤 {BUILTIN_STEPS}")
            return None

        timeout = item.get("timeout")
        if timeout is not None:
            try:
                timeout = float(timeout)
            except (TypeError, ValueError):
                self.errors.append(f"{where}: timeout 必须是数字，实际为 '{timeout}'")
                return None
        spec = CommandSpec(
            name=str(item.get("name", "")),
            best_effort=bool(item.get("best_effort", False)),
            probe=bool(item.get("probe", False)),
            timeout=timeout,
            cwd=str(item.get("cwd", "")),
            env={str(k): str(v) for k, v in (item.get("env") or {}).items()},
        )
        if kinds:
            options = item[kinds[0]]
            if not isinstance(options, dict):
                self.errors.append(f"{where}: {kinds[0]} 参数必须是映射")
                return None
            spec.kind = kinds[0]
            spec.options = options
            return spec

        if "argv" in item:
            argv = item["argv"]
            if not isinstance(argv, list) or not argv:
                self.errors.append(f"{where}: argv 必须是非空列表")
                return None
            spec.command = [str(a) for a in argv]
            spec.shell = bool(item.get("shell", False))
        else:
            spec.command = str(item["run"])
            spec.shell = bool(item.get("shell", True))
        spec.provision = [
            p for p in (
                self._parse_command(p, f"{where}.provision[{n}]")
                for n, p in enumerate(item.get("provision") or [])
            ) if p is not None
        ]
        return spec

    def _parse_artifacts(self, items: Any, where: str) -> list[ArtifactSpec]:
        if not isinstance(items, list):
            self.errors.append(f"{where}: artifacts 必须是列表")
            return []
        specs: list[ArtifactSpec] = []
        for k, item in enumerate(items):
            if isinstance(item, str) and item.strip():
                specs.append(ArtifactSpec(pattern=item))
            elif isinstance(item, dict) and str(item.get("pattern") or "").strip():
                specs.append(ArtifactSpec(
                    pattern=str(item["pattern"]),
                    allow_empty=bool(item.get("allow_empty", False)),
                ))
            else:
                self.errors.append(f"{where}.artifacts[{k}]: 需要字符串或含 pattern 的映射")
        return specs


def load_definition(path: str | Path, params: dict[str, str] | None = None) -> PipelineDefinition:
    """从 YAML 文件加载流水线定义"""
    p = Path(path)
    if not p.exists():
        raise ConfigError(f"流水线定义文件不存在: {p}")
    try:
        data = load_yaml(p)
    except (yaml.YAMLError, ValueError) as e:
        raise ConfigError(f"流水线定义无法解析: {p}: {e}") from e
    if not data:
        raise ConfigError(f"流水线定义为空: {p}")
    definition = DefinitionLoader(params).parse(data, source=str(p))
    logger.info(
        "已加载流水线 %s: %d 个单元, %d 个阶段",
        definition.name, len(definition.units), len(definition.stages()),
    )
    return definition
