"""RunService 端到端测试：真实 shell 命令 + 内存容器运行时"""

from __future__ import annotations

import json
import re
from pathlib import Path

import pytest

from stageflow.core.config import Config
from stageflow.core.exceptions import ValidationError
from stageflow.core.executor import CancelToken
from stageflow.core.models import ExitCode, PipelineState
from stageflow.services.container import ServiceContainer
from stageflow.services.run_service import RunRequest, RunService, new_build_id

PIPELINE = """\
name: demo
params:
  image: "demo:{build_id}"
units:
  - name: Build
    commands:
      - "mkdir -p build && printf app > build/app"
    artifacts: [build/app]
  - name: Quality
    parallel:
      - name: Scan
        policy: tolerant
        commands: ["exit 1"]
      - name: Lint
        policy: tolerant
        commands: ["echo lint"]
  - name: Deploy
    commands:
      - image_build: {image: "{image}"}
      - deploy: {container: demo-app, image: "{image}"}
  - name: HealthCheck
    unhealthy_policy: tolerant
    commands:
      - health_check: {container: demo-app}
  - name: Deliver
    commands:
      - package: {output: "dist/demo-{build_id}.tar.gz", include: [build/app]}
    artifacts: ["dist/*.tar.gz"]
"""


@pytest.fixture()
def service(config: Config, fake_runtime) -> RunService:
    return RunService(ServiceContainer(config, runtime=fake_runtime))


@pytest.fixture()
def pipeline(tmp_path: Path) -> Path:
    path = tmp_path / "demo.yml"
    path.write_text(PIPELINE, encoding="utf-8")
    return path


class TestRunService:
    def test_full_run(self, service: RunService, pipeline: Path, config: Config,
                      fake_runtime, workspace: Path) -> None:
        report = service.execute(RunRequest(definition=str(pipeline), build_id="7"))

        assert report.verdict == PipelineState.SUCCEEDED
        assert report.exit_code == ExitCode.SUCCESS
        assert report.tolerated_failures == ["Scan"]
        assert [e.name for e in report.entries] == [
            "Build", "Scan", "Lint", "Deploy", "HealthCheck", "Deliver",
        ]
        assert fake_runtime.running() == ["demo-app"]
        assert fake_runtime.ops("build")[0][1] == "demo:7"
        assert report.container["health"]["verdict"] == "healthy"
        assert (workspace / "dist" / "demo-7.tar.gz.sha256").exists()

        reports = Path(config.report_dir)
        assert sorted(p.name for p in reports.glob("run-7.*")) == ["run-7.json", "run-7.txt"]
        data = json.loads((reports / "run-7.json").read_text(encoding="utf-8"))
        assert data["build_id"] == "7"
        assert service.c.history.get("7")["pipeline"] == "demo"

    def test_fatal_stage_stops_pipeline(self, service: RunService, tmp_path: Path) -> None:
        path = tmp_path / "broken.yml"
        path.write_text(PIPELINE.replace("printf app > build/app", "exit 4"), encoding="utf-8")
        report = service.execute(RunRequest(definition=str(path), build_id="8", formats=("json",)))

        assert report.exit_code == ExitCode.STAGE_FAILED
        assert [e.name for e in report.entries] == ["Build"]
        assert report.entries[0].fatal
        assert report.outputs[0].endswith("run-8.json")

    def test_cancelled_before_start(self, service: RunService, pipeline: Path, fake_runtime) -> None:
        token = CancelToken()
        token.cancel()
        report = service.execute(RunRequest(definition=str(pipeline), build_id="9", cancel_token=token))
        assert report.cancelled
        assert report.exit_code == ExitCode.CANCELLED
        assert report.entries == []
        assert fake_runtime.calls == []

    def test_generated_build_id(self, service: RunService, pipeline: Path) -> None:
        report = service.execute(RunRequest(definition=str(pipeline)))
        assert re.fullmatch(r"\d{8}-\d{6}-[0-9a-f]{6}", report.build_id)
        assert new_build_id() != new_build_id()


class TestLoad:
    def test_missing_step_options(self, service: RunService, tmp_path: Path) -> None:
        path = tmp_path / "bad.yml"
        path.write_text(
            "name: bad\nunits:\n  - name: Deploy\n    commands:\n      - deploy: {container: app}\n",
            encoding="utf-8",
        )
        with pytest.raises(ValidationError) as exc:
            service.load(str(path))
        assert any("Deploy" in d and "image" in d for d in exc.value.details)

    def test_provision_steps_validated(self, service: RunService, tmp_path: Path) -> None:
        path = tmp_path / "bad.yml"
        path.write_text(
            "name: bad\n"
            "units:\n"
            "  - name: Scan\n"
            "    commands:\n"
            "      - run: flawfinder src\n"
            "        provision:\n"
            "          - deploy: {container: app}\n",
            encoding="utf-8",
        )
        with pytest.raises(ValidationError) as exc:
            service.load(str(path))
        assert any("Scan" in d and "image" in d for d in exc.value.details)

    def test_empty_artifact_pattern_rejected(self, service: RunService, tmp_path: Path) -> None:
        path = tmp_path / "bad.yml"
        path.write_text(
            "name: bad\nunits:\n  - name: Build\n    commands: [\"true\"]\n    artifacts: [\"\"]\n",
            encoding="utf-8",
        )
        with pytest.raises(ValidationError):
            service.load(str(path))

    def test_params_override(self, service: RunService, pipeline: Path) -> None:
        d = service.load(str(pipeline), {"image": "custom:1"})
        deploy = d.units[2]
        assert deploy.commands[1].options["image"] == "custom:1"
