"""领域模型测试：阶段状态机、失败策略、运行报告退出码"""

from __future__ import annotations

import pytest

from stageflow.core.exceptions import StageStateError
from stageflow.core.models import (
    CommandSpec,
    ErrorCode,
    ExitCode,
    FailurePolicy,
    ParallelGroup,
    PipelineDefinition,
    PipelineState,
    ReportEntry,
    RunReport,
    Stage,
    StageStatus,
)


def _finished(name: str, status: StageStatus, policy: FailurePolicy = FailurePolicy.FATAL) -> Stage:
    s = Stage(name=name, failure_policy=policy)
    s.start()
    s.finish(status)
    return s


class TestStageLifecycle:
    def test_normal_transitions(self) -> None:
        s = Stage(name="Build")
        assert s.status == StageStatus.PENDING
        s.start()
        assert s.status == StageStatus.RUNNING
        s.finish(StageStatus.SUCCEEDED, "ok")
        assert s.status == StageStatus.SUCCEEDED
        assert s.message == "ok"
        assert s.duration >= 0

    def test_terminal_state_is_final(self) -> None:
        s = _finished("Build", StageStatus.FAILED)
        with pytest.raises(StageStateError):
            s.finish(StageStatus.SUCCEEDED)
        with pytest.raises(StageStateError):
            s.start()

    def test_finish_requires_terminal_status(self) -> None:
        s = Stage(name="Build")
        s.start()
        with pytest.raises(StageStateError):
            s.finish(StageStatus.RUNNING)

    def test_start_twice_rejected(self) -> None:
        s = Stage(name="Build")
        s.start()
        with pytest.raises(StageStateError):
            s.start()


class TestFailurePolicy:
    def test_fatal_failure(self) -> None:
        s = _finished("Build", StageStatus.FAILED)
        assert s.fatal
        assert s.outcome == "failed (fatal)"

    def test_tolerant_failure(self) -> None:
        s = _finished("StaticAnalysis", StageStatus.FAILED, FailurePolicy.TOLERANT)
        assert not s.fatal
        assert s.outcome == "failed (tolerant)"

    def test_forced_fatal_overrides_tolerant(self) -> None:
        s = _finished("HealthCheck", StageStatus.FAILED, FailurePolicy.TOLERANT)
        s.forced_fatal = True
        assert s.fatal

    def test_success_is_never_fatal(self) -> None:
        s = _finished("Build", StageStatus.SUCCEEDED)
        s.forced_fatal = True
        assert not s.fatal
        assert s.outcome == "succeeded"

    def test_group_status(self) -> None:
        ok = _finished("A", StageStatus.SUCCEEDED)
        tolerated = _finished("B", StageStatus.FAILED, FailurePolicy.TOLERANT)
        assert ParallelGroup("G", [ok, tolerated]).resolve_status() == StageStatus.SUCCEEDED
        fatal = _finished("C", StageStatus.FAILED)
        group = ParallelGroup("G", [ok, tolerated, fatal])
        assert group.fatal
        assert group.resolve_status() == StageStatus.FAILED


class TestCommandSpec:
    def test_label(self) -> None:
        assert CommandSpec(command="make -j4").label == "make -j4"
        assert CommandSpec(command=["cmake", "--build", "build"]).label == "cmake --build build"
        assert CommandSpec(kind="deploy").label == "deploy"
        assert CommandSpec(command="x", name="compile").label == "compile"

    def test_always_best_effort(self) -> None:
        assert not CommandSpec(command="make").always_best_effort
        assert CommandSpec(command="make", best_effort=True).always_best_effort
        assert CommandSpec(command="cppcheck --version", probe=True).always_best_effort
        assert CommandSpec(kind="container_logs").always_best_effort


class TestRunReport:
    def _report(self, verdict: PipelineState, entries: list[ReportEntry], **kw) -> RunReport:
        return RunReport(pipeline="p", build_id="1", timestamp="t", verdict=verdict, entries=entries, **kw)

    def test_exit_codes(self) -> None:
        ok = ReportEntry("Build", StageStatus.SUCCEEDED, FailurePolicy.FATAL)
        assert self._report(PipelineState.SUCCEEDED, [ok]).exit_code == ExitCode.SUCCESS

        failed = ReportEntry("Build", StageStatus.FAILED, FailurePolicy.FATAL, fatal=True)
        assert self._report(PipelineState.FAILED, [failed]).exit_code == ExitCode.STAGE_FAILED

        unreachable = ReportEntry(
            "Deploy", StageStatus.FAILED, FailurePolicy.FATAL, fatal=True,
            error_code=ErrorCode.CONTAINER_UNREACHABLE,
        )
        assert self._report(PipelineState.FAILED, [unreachable]).exit_code == ExitCode.INFRA_ERROR

        cancelled = self._report(PipelineState.FAILED, [ok], cancelled=True)
        assert cancelled.exit_code == ExitCode.CANCELLED

    def test_tolerated_failures(self) -> None:
        entries = [
            ReportEntry("Build", StageStatus.SUCCEEDED, FailurePolicy.FATAL),
            ReportEntry("StaticAnalysis", StageStatus.FAILED, FailurePolicy.TOLERANT),
        ]
        report = self._report(PipelineState.SUCCEEDED, entries)
        assert report.tolerated_failures == ["StaticAnalysis"]
        assert report.entry("StaticAnalysis").outcome == "failed (tolerant)"
        assert report.entry("Nope") is None


class TestPipelineDefinition:
    def test_stages_flattened_in_order(self) -> None:
        d = PipelineDefinition(name="p", units=[
            Stage("Build"),
            ParallelGroup("Quality", [Stage("A"), Stage("B")]),
            Stage("Test"),
        ])
        assert [s.name for s in d.stages()] == ["Build", "A", "B", "Test"]
