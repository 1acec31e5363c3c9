"""流水线定义加载与校验测试"""

from __future__ import annotations

from pathlib import Path

import pytest
import yaml

from stageflow.core.definition import DefinitionLoader, load_definition, substitute
from stageflow.core.exceptions import ConfigError, ValidationError
from stageflow.core.models import FailurePolicy, ParallelGroup, Stage

ROOT = Path(__file__).resolve().parents[3]


def _write(tmp_path: Path, data: dict) -> Path:
    path = tmp_path / "pipeline.yml"
    path.write_text(yaml.safe_dump(data, allow_unicode=True), encoding="utf-8")
    return path


def _errors(data: dict) -> list[str]:
    with pytest.raises(ValidationError) as exc:
        DefinitionLoader().parse(data, "test.yml")
    return exc.value.details


class TestSubstitute:
    def test_nested(self) -> None:
        value = {"a": ["{x}-1", {"b": "{y}"}], "n": 3}
        assert substitute(value, {"x": "X", "y": "Y"}) == {"a": ["X-1", {"b": "Y"}], "n": 3}

    def test_unknown_placeholder_kept(self) -> None:
        assert substitute("${HOME}/{missing}", {"x": "1"}) == "${HOME}/{missing}"


class TestDefinitionLoader:
    def test_units_and_group(self, tmp_path: Path) -> None:
        d = load_definition(_write(tmp_path, {
            "name": "casino",
            "env": {"CMAKE_BUILD_TYPE": "Release"},
            "units": [
                {"name": "Build", "commands": ["make"], "artifacts": ["build/app"]},
                {"name": "Quality", "parallel": [
                    {"name": "A", "policy": "tolerant", "commands": ["cppcheck ."]},
                    {"name": "B", "policy": "TOLERANT", "commands": ["flawfinder ."]},
                ]},
            ],
        }))
        assert d.name == "casino"
        assert d.env == {"CMAKE_BUILD_TYPE": "Release"}
        build, quality = d.units
        assert isinstance(build, Stage) and build.failure_policy == FailurePolicy.FATAL
        assert build.artifact_specs[0].pattern == "build/app"
        assert not build.artifact_specs[0].allow_empty
        assert isinstance(quality, ParallelGroup)
        assert [m.name for m in quality.members] == ["A", "B"]
        assert all(m.group == "Quality" for m in quality.members)
        assert quality.members[1].failure_policy == FailurePolicy.TOLERANT

    def test_param_precedence(self) -> None:
        data = {
            "name": "p",
            "params": {"image": "app", "tag": "dev"},
            "units": [{"name": "Deploy", "commands": ["docker run {image}:{tag} {pipeline}"]}],
        }
        d = DefinitionLoader({"tag": "42"}).parse(data)
        assert d.units[0].commands[0].command == "docker run app:42 p"
        assert d.params["tag"] == "42"

    def test_command_forms(self) -> None:
        d = DefinitionLoader().parse({"units": [{"name": "S", "commands": [
            "make all",
            {"run": "cppcheck --version", "probe": True},
            {"argv": ["make", "-j4"], "timeout": "600", "best_effort": True},
            {"render": {"template": "t.j2", "output": "Dockerfile"}, "name": "dockerfile"},
            {"run": "flawfinder .", "provision": ["pip install flawfinder"]},
        ]}]}, "x.yml")
        cmds = d.units[0].commands
        assert cmds[0].shell and cmds[0].command == "make all"
        assert cmds[1].probe and cmds[1].shell
        assert cmds[2].command == ["make", "-j4"] and not cmds[2].shell
        assert cmds[2].timeout == 600.0 and cmds[2].best_effort
        assert cmds[3].kind == "render" and cmds[3].options["output"] == "Dockerfile"
        assert cmds[3].label == "dockerfile"
        assert cmds[4].provision[0].command == "pip install flawfinder"
        assert d.name == "x"

    def test_artifact_mapping(self) -> None:
        d = DefinitionLoader().parse({"units": [{"name": "S", "commands": ["true"], "artifacts": [
            {"pattern": "reports/*.xml", "allow_empty": True},
        ]}]})
        assert d.units[0].artifact_specs[0].allow_empty


class TestHealthCheckPolicy:
    def _stage(self, **extra) -> dict:
        return {"units": [{
            "name": "HealthCheck",
            "commands": [{"health_check": {"container": "app"}}],
            **extra,
        }]}

    def test_unhealthy_policy_required(self) -> None:
        errors = _errors(self._stage())
        assert any("unhealthy_policy" in e for e in errors)

    def test_unhealthy_policy_sets_severity(self) -> None:
        d = DefinitionLoader().parse(self._stage(unhealthy_policy="tolerant"))
        assert d.units[0].failure_policy == FailurePolicy.TOLERANT
        d = DefinitionLoader().parse(self._stage(unhealthy_policy="fatal"))
        assert d.units[0].failure_policy == FailurePolicy.FATAL

    def test_conflicting_policy(self) -> None:
        errors = _errors(self._stage(unhealthy_policy="tolerant", policy="fatal"))
        assert any("冲突" in e for e in errors)

    def test_unhealthy_policy_without_health_check(self) -> None:
        errors = _errors({"units": [{"name": "S", "commands": ["true"], "unhealthy_policy": "fatal"}]})
        assert any("unhealthy_policy" in e for e in errors)


class TestValidation:
    def test_errors_collected(self) -> None:
        errors = _errors({"units": [
            {"name": "A", "commands": ["true"], "policy": "sometimes"},
            {"name": "A", "commands": ["true"], "colour": "red"},
            {"commands": ["true"]},
        ]})
        assert len(errors) >= 4
        assert any("sometimes" in e for e in errors)
        assert any("名称重复" in e for e in errors)
        assert any("colour" in e for e in errors)
        assert any("缺少 name" in e for e in errors)

    def test_empty_units(self) -> None:
        assert _errors({"name": "p"}) == ["units 必须是非空列表"]

    def test_nested_group_rejected(self) -> None:
        errors = _errors({"units": [{"name": "G", "parallel": [{"name": "H", "parallel": []}]}]})
        assert any("嵌套" in e for e in errors)

    def test_empty_group_rejected(self) -> None:
        errors = _errors({"units": [{"name": "G", "parallel": []}]})
        assert any("parallel" in e for e in errors)

    def test_command_must_pick_one_form(self) -> None:
        errors = _errors({"units": [{"name": "S", "commands": [
            {"run": "make", "argv": ["make"]},
            {"name": "nothing"},
        ]}]})
        assert len(errors) == 2

    def test_empty_artifact_pattern_rejected(self) -> None:
        errors = _errors({"units": [{"name": "S", "commands": ["true"], "artifacts": [
            "", "  ", {"pattern": ""}, "build/app",
        ]}]})
        assert len(errors) == 3
        assert all("artifacts" in e for e in errors)

    def test_bad_timeout(self) -> None:
        errors = _errors({"units": [{"name": "S", "commands": [{"run": "make", "timeout": "soon"}]}]})
        assert any("timeout" in e for e in errors)


class TestLoadDefinition:
    def test_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigError):
            load_definition(tmp_path / "nope.yml")

    def test_empty_file(self, tmp_path: Path) -> None:
        path = tmp_path / "empty.yml"
        path.write_text("", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_definition(path)

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "bad.yml"
        path.write_text("units: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            load_definition(path)

    def test_shipped_casino_pipeline(self) -> None:
        d = load_definition(ROOT / "pipelines" / "casino.yml", {"build_id": "42"})
        assert [u.name for u in d.units] == [
            "Build", "Quality", "Test", "Deploy", "HealthCheck", "Deliver",
        ]
        quality = d.units[1]
        assert isinstance(quality, ParallelGroup)
        assert [m.name for m in quality.members] == ["StaticAnalysis", "Flawfinder"]
        assert all(m.failure_policy == FailurePolicy.TOLERANT for m in quality.members)
        health = d.units[4]
        assert health.failure_policy == FailurePolicy.TOLERANT
        deploy = d.units[3]
        assert [c.kind for c in deploy.commands] == ["render", "image_build", "deploy"]
        assert deploy.commands[1].options["image"] == "casino-game:42"
        assert d.units[5].commands[0].options["output"] == "dist/casino-game-42.tar.gz"
