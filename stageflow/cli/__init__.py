"""stageflow 命令行接口

CLI 按领域拆分为子模块，每个模块注册自己的命令到 main group。
配置在 main 中显式加载，通过 click 上下文把 ServiceContainer 传给子命令。
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import click

from stageflow import __version__
from stageflow.core.config import Config
from stageflow.core.exceptions import ConfigError
from stageflow.core.models import ExitCode
from stageflow.services.container import ServiceContainer
from stageflow.utils.logger import setup_logging


def _parse_kv_pairs(pairs: tuple[str, ...]) -> dict[str, str]:
    """解析 key=value 参数对"""
    result: dict[str, str] = {}
    for p in pairs:
        if "=" not in p:
            raise click.BadParameter(f"需要 key=value 格式: {p}")
        k, v = p.split("=", 1)
        result[k.strip()] = v.strip()
    return result


def _load_config(path: str, workspace: str | None) -> Config:
    if Path(path).exists():
        cfg = Config.from_file(path)
    else:
        cfg = Config()
    return cfg.with_overrides(workspace_dir=workspace)


@click.group()
@click.version_option(version=__version__)
@click.option("--config", "-c", "config_path", default="configs/default.yml",
              envvar="STAGEFLOW_CONFIG", help="配置文件路径")
@click.option("--workspace", "-w", default=None, help="工作区目录（覆盖配置）")
@click.pass_context
def main(ctx: click.Context, config_path: str, workspace: str | None) -> None:
    """stageflow - 构建 / 测试 / 扫描 / 部署流水线执行引擎"""
    setup_logging(
        level=os.getenv("STAGEFLOW_LOG_LEVEL", "INFO"),
        json_output=os.getenv("STAGEFLOW_LOG_JSON", "") == "1",
    )
    try:
        cfg = _load_config(config_path, workspace)
    except ConfigError as e:
        click.echo(f"配置错误: {e}", err=True)
        sys.exit(int(ExitCode.INVALID_DEFINITION))
    ctx.obj = ServiceContainer(cfg)


# 注册各领域子命令
from stageflow.cli.cmd_run import register as _reg_run  # noqa: E402
from stageflow.cli.cmd_container import register as _reg_container  # noqa: E402
from stageflow.cli.cmd_misc import register as _reg_misc  # noqa: E402

_reg_run(main)
_reg_container(main)
_reg_misc(main)
