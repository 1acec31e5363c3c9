"""运行报告生成器 - Strategy 模式

finalize() 是纯聚合：把阶段结果和容器事实汇总为 RunReport。
write() 按格式写出报告文件，每种格式实现 ReportFormatter 并注册到工厂，
新增格式只需继承 ReportFormatter 并调用 register_formatter()。
"""

from __future__ import annotations

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Any
from xml.sax.saxutils import quoteattr as xml_quoteattr

from stageflow.core.models import (
    PipelineState,
    ReportEntry,
    RunReport,
    Stage,
    StageStatus,
)
from stageflow.utils.yaml_io import atomic_write

logger = logging.getLogger(__name__)


def report_to_dict(report: RunReport) -> dict[str, Any]:
    """RunReport → 可 JSON 序列化的字典"""
    return {
        "pipeline": report.pipeline,
        "build_id": report.build_id,
        "timestamp": report.timestamp,
        "verdict": report.verdict.value,
        "exit_code": int(report.exit_code),
        "cancelled": report.cancelled,
        "duration": round(report.duration, 3),
        "summary": summarize(report),
        "stages": [
            {
                "name": e.name,
                "group": e.group,
                "status": e.status.value,
                "policy": e.policy.value,
                "outcome": e.outcome,
                "fatal": e.fatal,
                "duration": round(e.duration, 3),
                "message": e.message,
                "error_code": e.error_code,
                "degraded": list(e.degraded),
                "artifacts": [asdict(a) for a in e.artifacts],
                "commands": [c.to_dict() for c in e.commands],
            }
            for e in report.entries
        ],
        "container": report.container,
        "diagnostics": report.diagnostics,
    }


def summarize(report: RunReport) -> dict[str, int]:
    """统计阶段状态分布"""
    entries = report.entries
    return {
        "total": len(entries),
        "succeeded": sum(1 for e in entries if e.status == StageStatus.SUCCEEDED),
        "failed_fatal": sum(1 for e in entries if e.fatal),
        "failed_tolerant": sum(
            1 for e in entries if e.status == StageStatus.FAILED and not e.fatal
        ),
        "artifacts": sum(len(e.artifacts) for e in entries),
    }


# =========================================================================
# Strategy: ReportFormatter
# =========================================================================


class ReportFormatter(ABC):
    """报告格式化策略基类"""

    @abstractmethod
    def format(self, report: RunReport) -> str:
        """将报告格式化为字符串"""

    @abstractmethod
    def extension(self) -> str:
        """输出文件扩展名（不含 .）"""


class JSONFormatter(ReportFormatter):
    def format(self, report: RunReport) -> str:
        return json.dumps(report_to_dict(report), indent=2, ensure_ascii=False)

    def extension(self) -> str:
        return "json"


class TextFormatter(ReportFormatter):
    """纯文本交付摘要"""

    def format(self, report: RunReport) -> str:
        summary = summarize(report)
        lines = [
            "stageflow 运行报告",
            "=" * 40,
            f"流水线: {report.pipeline}",
            f"构建号: {report.build_id}",
            f"时间:   {report.timestamp}",
            f"结论:   {report.verdict.value.upper()} (退出码 {int(report.exit_code)})",
            f"耗时:   {report.duration:.1f}s",
        ]
        if report.cancelled:
            lines.append("已取消: 是")
        lines += ["", "阶段:"]
        width = max((len(self._label(e)) for e in report.entries), default=10)
        for e in report.entries:
            mark = {"succeeded": "OK", "failed": "FAIL", "skipped": "SKIP"}.get(e.status.value, "..")
            lines.append(
                f"  [{mark:4s}] {self._label(e):{width}s}  {e.outcome:18s} {e.duration:6.1f}s",
            )
            if e.message:
                lines.append(f"         {e.message.splitlines()[0][:200]}")
            if e.degraded:
                lines.append(f"         降级（工具不可用）: {', '.join(e.degraded)}")
            for a in e.artifacts:
                lines.append(f"         - {a.path} ({a.size_bytes} B)")
        lines += [
            "",
            f"汇总: 共 {summary['total']} 个阶段, 成功 {summary['succeeded']}, "
            f"致命失败 {summary['failed_fatal']}, 容忍失败 {summary['failed_tolerant']}, "
            f"产物 {summary['artifacts']} 个",
        ]
        if report.tolerated_failures:
            lines.append(f"容忍的失败: {', '.join(report.tolerated_failures)}")
        if report.container:
            c = report.container
            health = c.get("health", {})
            lines.append(
                f"容器: {c.get('name', '')} state={c.get('state', '')} "
                f"health={health.get('verdict', c.get('health_state', ''))} "
                f"address={c.get('address', '') or '-'}",
            )
        for key, value in report.diagnostics.items():
            lines.append(f"诊断 {key}: {value}")
        return "\n".join(lines) + "\n"

    @staticmethod
    def _label(entry: ReportEntry) -> str:
        return f"{entry.name} ({entry.group})" if entry.group else entry.name

    def extension(self) -> str:
        return "txt"


class JUnitFormatter(ReportFormatter):
    """JUnit XML，便于 CI 系统展示阶段结果"""

    def format(self, report: RunReport) -> str:
        summary = summarize(report)
        cases = ""
        for e in report.entries:
            name_attr = xml_quoteattr(e.name)
            class_attr = xml_quoteattr(f"{report.pipeline}.{e.group or 'pipeline'}")
            head = f"    <testcase classname={class_attr} name={name_attr} time=\"{e.duration:.1f}\""
            if e.status == StageStatus.SUCCEEDED:
                cases += head + "/>\n"
            elif e.fatal:
                cases += (
                    f"{head}>\n      <failure message={xml_quoteattr(e.message)}/>\n"
                    "    </testcase>\n"
                )
            else:
                cases += (
                    f"{head}>\n      <skipped message={xml_quoteattr('tolerated: ' + e.message)}/>\n"
                    "    </testcase>\n"
                )
        return (
            '<?xml version="1.0" encoding="UTF-8"?>\n'
            f"<testsuite name={xml_quoteattr(report.pipeline)} tests=\"{summary['total']}\" "
            f"failures=\"{summary['failed_fatal']}\" skipped=\"{summary['failed_tolerant']}\">\n"
            f"{cases}"
            "</testsuite>\n"
        )

    def extension(self) -> str:
        return "xml"


# =========================================================================
# 注册制工厂
# =========================================================================

_formatters: dict[str, type[ReportFormatter]] = {
    "json": JSONFormatter,
    "junit": JUnitFormatter,
    "text": TextFormatter,
}


def register_formatter(name: str, cls: type[ReportFormatter]) -> None:
    """注册自定义报告格式"""
    _formatters[name] = cls


def available_formats() -> list[str]:
    return sorted(_formatters)


class RunReporter:
    """运行报告汇总与输出"""

    def __init__(self, output_dir: str = "reports") -> None:
        self.output_dir = Path(output_dir)

    @staticmethod
    def finalize(
        stage_results: list[Stage],
        container_report: dict[str, Any] | None = None,
        *,
        pipeline: str = "",
        build_id: str = "",
        cancelled: bool = False,
        duration: float = 0.0,
    ) -> RunReport:
        """纯聚合：任一致命失败或被取消则结论为 failed"""
        entries = [
            ReportEntry(
                name=s.name,
                status=s.status,
                policy=s.failure_policy,
                fatal=s.fatal,
                group=s.group,
                artifacts=list(s.artifacts),
                duration=s.duration,
                message=s.message,
                degraded=list(s.degraded),
                commands=list(s.records),
                error_code=s.error_code,
            )
            for s in stage_results
        ]
        failed = cancelled or any(e.fatal for e in entries)
        return RunReport(
            pipeline=pipeline,
            build_id=build_id,
            timestamp=datetime.now(tz=timezone.utc).isoformat(),
            verdict=PipelineState.FAILED if failed else PipelineState.SUCCEEDED,
            entries=entries,
            container=dict(container_report or {}),
            cancelled=cancelled,
            duration=duration,
        )

    def write(self, report: RunReport, formats: tuple[str, ...] | list[str] = ("text", "json")) -> list[str]:
        """写出报告文件，返回文件路径列表"""
        paths: list[str] = []
        for fmt in formats:
            formatter_cls = _formatters.get(fmt)
            if formatter_cls is None:
                raise ValueError(f"不支持的格式: {fmt}（可用: {available_formats()}）")
            formatter = formatter_cls()
            output = self.output_dir / f"run-{report.build_id}.{formatter.extension()}"
            atomic_write(output, formatter.format(report))
            paths.append(str(output))
        report.outputs = paths
        logger.info("报告已生成: %s", ", ".join(paths))
        return paths
