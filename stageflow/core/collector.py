"""产物收集器

按 glob 模式从阶段工作目录收集文件，复制到扁平的产物目录。

规则:
  - 每个模式带 allow_empty 标志；无匹配时 allow_empty=True 为空操作，
    否则记为缺失，全部模式处理完后统一抛 ArtifactMissingError
  - 结果按路径排序并去重，同一目录重复收集得到相同的列表
  - 同一次收集中不同来源的同名文件改用相对路径命名（a/report.xml → a__report.xml），
    不会互相覆盖
  - 并发阶段之间的文件名冲突由阶段定义保证，这里不加锁
"""

from __future__ import annotations

import logging
import shutil
from pathlib import Path

from stageflow.core.exceptions import ArtifactMissingError
from stageflow.core.models import Artifact, ArtifactSpec

logger = logging.getLogger(__name__)


class ArtifactCollector:
    """收集并归档阶段产物"""

    def __init__(self, output_dir: str = "artifacts") -> None:
        self.output_dir = Path(output_dir)

    @staticmethod
    def match(pattern: str, base_dir: str | Path = ".") -> list[Path]:
        """返回模式匹配到的文件（排序，不含目录）"""
        base = Path(base_dir)
        if Path(pattern).is_absolute():
            anchor = Path(pattern).anchor
            candidates = Path(anchor).glob(str(Path(pattern).relative_to(anchor)))
        else:
            candidates = base.glob(pattern)
        return sorted({p for p in candidates if p.is_file()})

    def collect(
        self, stage_name: str, specs: list[ArtifactSpec], base_dir: str | Path = ".",
    ) -> list[Artifact]:
        """收集全部模式，缺少必需产物时抛 ArtifactMissingError（附带已收集列表）"""
        if not specs:
            return []
        self.output_dir.mkdir(parents=True, exist_ok=True)
        collected: dict[str, Artifact] = {}
        owners: dict[str, Path] = {}  # 目标文件名 -> 来源
        missing: list[str] = []

        for spec in specs:
            matches = self.match(spec.pattern, base_dir)
            if not matches:
                if spec.allow_empty:
                    logger.info("[%s] 产物模式无匹配（允许为空）: %s", stage_name, spec.pattern)
                else:
                    logger.error("[%s] 必需产物缺失: %s", stage_name, spec.pattern)
                    missing.append(spec.pattern)
                continue
            for src in matches:
                name = self._dest_name(stage_name, src, base_dir, owners)
                artifact = self._archive(stage_name, src, name)
                collected[artifact.path] = artifact

        artifacts = [collected[k] for k in sorted(collected)]
        logger.info("[%s] 已收集 %d 个产物到 %s", stage_name, len(artifacts), self.output_dir)
        if missing:
            raise ArtifactMissingError(missing, artifacts)
        return artifacts

    @staticmethod
    def _dest_name(
        stage_name: str, src: Path, base_dir: str | Path, owners: dict[str, Path],
    ) -> str:
        source = src.resolve()
        name = src.name
        owner = owners.setdefault(name, source)
        if owner == source:
            return name
        try:
            rel = source.relative_to(Path(base_dir).resolve())
        except ValueError:
            rel = Path(*source.parts[1:])
        flat = "__".join(rel.parts)
        if owners.setdefault(flat, source) != source:
            raise FileExistsError(f"产物重名且无法区分: {src} -> {flat}")
        logger.warning("[%s] 产物重名，改用相对路径命名: %s -> %s", stage_name, src, flat)
        return flat

    def _archive(self, stage_name: str, src: Path, name: str) -> Artifact:
        dest = self.output_dir / name
        if src.resolve() != dest.resolve():
            shutil.copy2(src, dest)
        return Artifact(
            path=str(dest), size_bytes=dest.stat().st_size, produced_by=stage_name,
        )

    def register(self, stage_name: str, path: str | Path) -> Artifact | None:
        """直接登记一个已存在的文件（例如阶段日志），不复制"""
        p = Path(path)
        if not p.is_file():
            return None
        return Artifact(path=str(p), size_bytes=p.stat().st_size, produced_by=stage_name)
