"""并行组调度器 - 管理组内阶段的并发执行

每个成员阶段一个线程（并发度等于声明的成员数），执行后在汇合屏障处等待全部结束。
某个成员致命失败时不会提前取消仍在运行的兄弟阶段：
等所有成员跑完以获得完整诊断，再判定组失败。
成员内部的意外异常由 StageExecutor 记入该成员的结果，不会打断屏障。
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import ThreadPoolExecutor

from stageflow.core.models import ParallelGroup, StageStatus
from stageflow.core.stage import StageExecutor

logger = logging.getLogger(__name__)


class GroupScheduler:
    """并行组执行器"""

    def __init__(self, stage_executor: StageExecutor) -> None:
        self.stage_executor = stage_executor

    def execute_group(self, group: ParallelGroup) -> ParallelGroup:
        """并发执行全部成员，全部终态后返回"""
        start = time.monotonic()
        group.status = StageStatus.RUNNING
        members = group.members
        logger.info(
            "[Group] 开始: %s (%d 个成员: %s)",
            group.name, len(members), ", ".join(m.name for m in members),
        )
        if members:
            with ThreadPoolExecutor(
                max_workers=len(members), thread_name_prefix=f"group-{group.name}",
            ) as pool:
                futures = [pool.submit(self.stage_executor.execute_stage, m) for m in members]
                for member, future in zip(members, futures):
                    future.result()
                    logger.info("  成员完成: %s -> %s", member.name, member.outcome)

        group.status = group.resolve_status()
        group.duration = time.monotonic() - start
        failed = [m.name for m in members if m.fatal]
        if failed:
            logger.error("[Group] 失败: %s (致命失败成员: %s)", group.name, ", ".join(failed))
        else:
            logger.info("[Group] 完成: %s (%.1fs)", group.name, group.duration)
        return group
