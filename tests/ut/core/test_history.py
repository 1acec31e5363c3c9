"""运行历史管理器测试"""

from __future__ import annotations

from pathlib import Path

from stageflow.core.history import HistoryManager
from stageflow.core.models import FailurePolicy, RunReport, Stage, StageStatus
from stageflow.core.reporter import RunReporter


def _report(pipeline: str, build_id: str, scan: StageStatus = StageStatus.SUCCEEDED) -> RunReport:
    stages = []
    for name, status in [("Build", StageStatus.SUCCEEDED), ("StaticAnalysis", scan)]:
        s = Stage(name=name, failure_policy=FailurePolicy.TOLERANT)
        s.start()
        s.finish(status)
        stages.append(s)
    return RunReporter.finalize(stages, pipeline=pipeline, build_id=build_id)


class TestHistoryManager:
    def test_record_and_query(self, tmp_path: Path) -> None:
        hm = HistoryManager(history_file=str(tmp_path / "data" / "history.json"))
        entry = hm.record_run(_report("casino", "1"))

        assert entry["pipeline"] == "casino"
        assert entry["verdict"] == "succeeded"
        assert entry["exit_code"] == 0
        assert entry["summary"]["total"] == 2
        assert [s["name"] for s in entry["stages"]] == ["Build", "StaticAnalysis"]
        assert len(hm.query()) == 1

    def test_query_by_pipeline_and_limit(self, tmp_path: Path) -> None:
        hm = HistoryManager(history_file=str(tmp_path / "history.json"))
        hm.record_run(_report("casino", "1"))
        hm.record_run(_report("other", "2"))
        hm.record_run(_report("casino", "3"))

        casino = hm.query(pipeline="casino")
        assert {r["build_id"] for r in casino} == {"1", "3"}
        assert len(hm.query(limit=1)) == 1

    def test_get_by_run_or_build_id(self, tmp_path: Path) -> None:
        hm = HistoryManager(history_file=str(tmp_path / "history.json"))
        entry = hm.record_run(_report("casino", "b-77"))
        assert hm.get(entry["run_id"])["build_id"] == "b-77"
        assert hm.get("b-77")["run_id"] == entry["run_id"]
        assert hm.get("missing") is None

    def test_stage_summary(self, tmp_path: Path) -> None:
        hm = HistoryManager(history_file=str(tmp_path / "history.json"))
        hm.record_run(_report("casino", "1"))
        hm.record_run(_report("casino", "2", scan=StageStatus.FAILED))

        s = hm.stage_summary("StaticAnalysis")
        assert s["total_runs"] == 2
        assert s["succeeded"] == 1
        assert s["success_rate"] == 50.0
        assert hm.stage_summary("Nope")["total_runs"] == 0

    def test_empty_history(self, tmp_path: Path) -> None:
        hm = HistoryManager(history_file=str(tmp_path / "none.json"))
        assert hm.query() == []
