"""RunReporter 与报告格式化器测试"""

from __future__ import annotations

import json
from pathlib import Path

import pytest

from stageflow.core.models import (
    Artifact,
    FailurePolicy,
    PipelineState,
    RunReport,
    Stage,
    StageStatus,
)
from stageflow.core.reporter import (
    ReportFormatter,
    RunReporter,
    available_formats,
    register_formatter,
    report_to_dict,
    summarize,
)


def _stage(name: str, status: StageStatus, policy=FailurePolicy.FATAL, **kw) -> Stage:
    s = Stage(name=name, failure_policy=policy, **kw)
    s.start()
    s.finish(status, "boom" if status == StageStatus.FAILED else "")
    return s


@pytest.fixture()
def tolerated_report() -> RunReport:
    build = _stage("Build", StageStatus.SUCCEEDED)
    build.artifacts = [Artifact(path="artifacts/casino_game", size_bytes=10, produced_by="Build")]
    scan = _stage("StaticAnalysis", StageStatus.FAILED, FailurePolicy.TOLERANT, group="Quality")
    return RunReporter.finalize(
        [build, scan],
        {"name": "casino-app", "state": "running", "health": {"verdict": "healthy"}},
        pipeline="casino", build_id="42", duration=1.5,
    )


class TestFinalize:
    def test_tolerated_failure_is_success(self, tolerated_report: RunReport) -> None:
        assert tolerated_report.verdict == PipelineState.SUCCEEDED
        assert tolerated_report.entry("StaticAnalysis").outcome == "failed (tolerant)"
        assert tolerated_report.container["name"] == "casino-app"

    def test_fatal_failure(self) -> None:
        report = RunReporter.finalize([_stage("Build", StageStatus.FAILED)], pipeline="p", build_id="1")
        assert report.verdict == PipelineState.FAILED

    def test_cancelled_is_failed(self) -> None:
        report = RunReporter.finalize([], cancelled=True)
        assert report.verdict == PipelineState.FAILED
        assert report.cancelled

    def test_summarize(self, tolerated_report: RunReport) -> None:
        assert summarize(tolerated_report) == {
            "total": 2, "succeeded": 1, "failed_fatal": 0, "failed_tolerant": 1, "artifacts": 1,
        }


class TestWrite:
    def test_write_default_formats(self, tolerated_report: RunReport, tmp_path: Path) -> None:
        paths = RunReporter(output_dir=str(tmp_path)).write(tolerated_report)
        assert [Path(p).name for p in paths] == ["run-42.txt", "run-42.json"]
        assert tolerated_report.outputs == paths

        data = json.loads((tmp_path / "run-42.json").read_text(encoding="utf-8"))
        assert data["verdict"] == "succeeded"
        assert data["exit_code"] == 0
        assert data["stages"][1]["outcome"] == "failed (tolerant)"
        assert data["stages"][0]["artifacts"][0]["path"] == "artifacts/casino_game"

        text = (tmp_path / "run-42.txt").read_text(encoding="utf-8")
        assert "StaticAnalysis (Quality)" in text
        assert "failed (tolerant)" in text
        assert "casino-app" in text

    def test_junit(self, tolerated_report: RunReport, tmp_path: Path) -> None:
        RunReporter(output_dir=str(tmp_path)).write(tolerated_report, ["junit"])
        xml = (tmp_path / "run-42.xml").read_text(encoding="utf-8")
        assert 'tests="2"' in xml and 'failures="0"' in xml and 'skipped="1"' in xml
        assert "<skipped" in xml

    def test_unknown_format(self, tolerated_report: RunReport, tmp_path: Path) -> None:
        with pytest.raises(ValueError, match="不支持的格式"):
            RunReporter(output_dir=str(tmp_path)).write(tolerated_report, ["pdf"])

    def test_register_custom_formatter(self, tolerated_report: RunReport, tmp_path: Path) -> None:
        class VerdictFormatter(ReportFormatter):
            def format(self, report: RunReport) -> str:
                return report.verdict.value

            def extension(self) -> str:
                return "verdict"

        register_formatter("verdict", VerdictFormatter)
        assert "verdict" in available_formats()
        RunReporter(output_dir=str(tmp_path)).write(tolerated_report, ["verdict"])
        assert (tmp_path / "run-42.verdict").read_text(encoding="utf-8") == "succeeded"

    def test_report_to_dict_serializable(self, tolerated_report: RunReport) -> None:
        json.dumps(report_to_dict(tolerated_report))
