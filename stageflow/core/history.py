"""运行历史 - 每次流水线运行的结论记录与查询

每次运行结束后追加一条记录到历史文件，支持：
  - 按流水线名查询最近记录
  - 按 run_id / build_id 获取单条记录
  - 统计单个阶段的历史成功率（例如扫描类阶段的容忍失败趋势）
"""

from __future__ import annotations

import json
import logging
import threading
import uuid
from pathlib import Path
from typing import Any

from stageflow.core.models import RunReport
from stageflow.core.reporter import summarize
from stageflow.utils.yaml_io import atomic_write

logger = logging.getLogger(__name__)


class HistoryManager:
    """运行历史管理器"""

    def __init__(self, history_file: str = "data/history.json") -> None:
        self.history_file = Path(history_file)
        self._lock = threading.Lock()

    def _load(self) -> list[dict[str, Any]]:
        if not self.history_file.exists():
            return []
        with open(self.history_file, encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, list) else []

    def _save(self, records: list[dict[str, Any]]) -> None:
        atomic_write(self.history_file, json.dumps(records, indent=2, ensure_ascii=False))

    def record_run(self, report: RunReport) -> dict[str, Any]:
        """记录一次运行，返回含 run_id 的记录"""
        entry: dict[str, Any] = {
            "run_id": str(uuid.uuid4())[:8],
            "timestamp": report.timestamp,
            "pipeline": report.pipeline,
            "build_id": report.build_id,
            "verdict": report.verdict.value,
            "exit_code": int(report.exit_code),
            "cancelled": report.cancelled,
            "summary": summarize(report),
            "stages": [
                {"name": e.name, "status": e.status.value, "outcome": e.outcome,
                 "duration": round(e.duration, 3)}
                for e in report.entries
            ],
            "outputs": list(report.outputs),
        }
        with self._lock:
            records = self._load()
            records.append(entry)
            self._save(records)
        logger.info("运行历史已记录: run_id=%s, build=%s", entry["run_id"], report.build_id)
        return entry

    def query(self, *, pipeline: str | None = None, limit: int = 50) -> list[dict[str, Any]]:
        """查询历史记录，按时间倒序"""
        records = self._load()
        if pipeline:
            records = [r for r in records if r.get("pipeline") == pipeline]
        records.sort(key=lambda x: x.get("timestamp", ""), reverse=True)
        return records[:limit]

    def get(self, run_id: str) -> dict[str, Any] | None:
        for r in self._load():
            if r.get("run_id") == run_id or r.get("build_id") == run_id:
                return r
        return None

    def stage_summary(self, stage_name: str) -> dict[str, Any]:
        """单个阶段的历史汇总"""
        runs = [
            {"build_id": r.get("build_id", ""), "timestamp": r.get("timestamp", ""), **s}
            for r in self._load()
            for s in r.get("stages", [])
            if s.get("name") == stage_name
        ]
        total = len(runs)
        succeeded = sum(1 for r in runs if r.get("status") == "succeeded")
        return {
            "stage": stage_name,
            "total_runs": total,
            "succeeded": succeeded,
            "failed": total - succeeded,
            "success_rate": round(succeeded / total * 100, 1) if total else 0,
            "recent": runs[-10:],
        }
