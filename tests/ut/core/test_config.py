"""Config 与日志配置测试"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from pathlib import Path

import pytest

from stageflow.core.config import Config
from stageflow.core.exceptions import ConfigError
from stageflow.utils.logger import ConsoleFormatter, JSONFormatter, reset_logging, setup_logging

ROOT = Path(__file__).resolve().parents[3]


class TestConfig:
    def test_defaults(self) -> None:
        cfg = Config()
        assert cfg.env_overlay["JENKINS_HOME"] == "/tmp"
        assert cfg.report_formats == ("text", "json")
        assert cfg.container_cli == "docker"

    def test_immutable(self) -> None:
        with pytest.raises(dataclasses.FrozenInstanceError):
            Config().report_dir = "elsewhere"  # type: ignore[misc]

    def test_with_overrides_ignores_none(self) -> None:
        cfg = Config().with_overrides(workspace_dir=None, report_dir="out")
        assert cfg.workspace_dir == "."
        assert cfg.report_dir == "out"

    def test_from_file(self, tmp_path: Path) -> None:
        path = tmp_path / "cfg.yml"
        path.write_text(
            "report_dir: out\n"
            "extra_path: /opt/tools/bin\n"
            "report_formats: [json]\n"
            "env_overlay: {LANG: C.UTF-8}\n"
            "team: games\n",
            encoding="utf-8",
        )
        cfg = Config.from_file(str(path))
        assert cfg.report_dir == "out"
        assert cfg.extra_path == ("/opt/tools/bin",)
        assert cfg.report_formats == ("json",)
        assert cfg.env_overlay == {
            "JENKINS_HOME": "/tmp", "DEBIAN_FRONTEND": "noninteractive", "LANG": "C.UTF-8",
        }
        assert cfg.extra == {"team": "games"}

    def test_from_missing_file_is_default(self, tmp_path: Path) -> None:
        assert Config.from_file(str(tmp_path / "nope.yml")) == Config()

    def test_invalid_file(self, tmp_path: Path) -> None:
        path = tmp_path / "cfg.yml"
        path.write_text("env_overlay: [a, b]\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            Config.from_file(str(path))
        path.write_text("report_dir: [unclosed\n", encoding="utf-8")
        with pytest.raises(ConfigError):
            Config.from_file(str(path))

    def test_shipped_default_config(self) -> None:
        cfg = Config.from_file(str(ROOT / "configs" / "default.yml"))
        assert cfg.dump_logs_container == "casino-app"
        assert "junit" in cfg.report_formats
        assert cfg.extra == {}

    def test_command_env_layers(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STAGEFLOW_TEST_INHERITED", "yes")
        cfg = Config(extra_path=("/opt/tools/bin",))
        env = cfg.command_env({"A": "1"}, {"A": "2", "B": 3})
        assert env["STAGEFLOW_TEST_INHERITED"] == "yes"
        assert env["JENKINS_HOME"] == "/tmp"
        assert env["A"] == "2" and env["B"] == "3"
        assert env["PATH"].split(os.pathsep)[-1] == "/opt/tools/bin"

    def test_command_env_without_inherit(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("STAGEFLOW_TEST_INHERITED", "yes")
        env = Config(inherit_env=False).command_env()
        assert "STAGEFLOW_TEST_INHERITED" not in env
        assert env["PATH"] == "/usr/local/bin"

    def test_extra_path_not_duplicated(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("PATH", "/usr/local/bin:/usr/bin")
        env = Config().command_env()
        assert env["PATH"] == "/usr/local/bin:/usr/bin"


class TestLogging:
    def test_json_formatter_includes_stage(self) -> None:
        record = logging.LogRecord("stageflow.output", logging.INFO, __file__, 1, "[%s] %s", ("Build", "ok"), None)
        record.stage = "Build"
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "[Build] ok"
        assert entry["stage"] == "Build"
        assert entry["level"] == "INFO"

    def test_console_formatter_passes_command_output(self) -> None:
        fmt = ConsoleFormatter()
        out = logging.LogRecord("stageflow.output", logging.INFO, __file__, 1, "[%s] %s", ("Build", "ok"), None)
        assert fmt.format(out) == "[Build] ok"
        other = logging.LogRecord("stageflow.core.stage", logging.INFO, __file__, 1, "开始", (), None)
        assert "[INFO   ] stageflow.core.stage: 开始" in fmt.format(other)

    def test_setup_logging_replaces_handlers(self) -> None:
        root = logging.getLogger()
        saved = root.handlers[:], root.level
        try:
            setup_logging("DEBUG")
            setup_logging("WARNING", json_output=True)
            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.WARNING
        finally:
            reset_logging()
            for h in saved[0]:
                root.addHandler(h)
            root.setLevel(saved[1])
