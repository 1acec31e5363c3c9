"""CLI：运行与校验命令"""

from __future__ import annotations

import signal
import sys
from typing import Any

import click

from stageflow.cli import _parse_kv_pairs
from stageflow.core.exceptions import (
    ConfigError,
    ContainerUnreachableError,
    StageflowError,
    ValidationError,
)
from stageflow.core.models import ExitCode
from stageflow.services.container import ServiceContainer


def register(group: click.Group) -> None:
    group.add_command(run)
    group.add_command(validate)


def _echo_validation(e: ValidationError) -> None:
    click.echo(f"定义无效: {e}", err=True)
    for d in e.details:
        click.echo(f"  - {d}", err=True)


def _install_interrupt(token: Any) -> Any:
    """第一次 Ctrl-C 请求取消（在单元边界生效），第二次恢复默认行为，返回原处理器"""
    def _handler(signum: int, frame: Any) -> None:  # noqa: ARG001
        token.cancel("收到中断信号")
        signal.signal(signal.SIGINT, signal.default_int_handler)

    return signal.signal(signal.SIGINT, _handler)


@click.command()
@click.argument("definition", type=click.Path(dir_okay=False))
@click.option("--param", "-p", multiple=True, help="定义参数，格式: key=value（可多次指定）")
@click.option("--build-id", default="", envvar="BUILD_NUMBER", help="构建号（默认自动生成）")
@click.option("--format", "-f", "formats", multiple=True, help="报告格式（可多次指定，默认取配置）")
@click.pass_obj
def run(
    svc: ServiceContainer, definition: str, param: tuple[str, ...],
    build_id: str, formats: tuple[str, ...],
) -> None:
    """执行流水线，进程退出码反映运行结论"""
    from stageflow.core.executor import CancelToken
    from stageflow.services.run_service import RunRequest, RunService

    token = CancelToken()
    previous = _install_interrupt(token)
    try:
        report = RunService(svc).execute(RunRequest(
            definition=definition, params=_parse_kv_pairs(param),
            build_id=build_id, formats=formats, cancel_token=token,
        ))
    except ValidationError as e:
        _echo_validation(e)
        sys.exit(int(ExitCode.INVALID_DEFINITION))
    except ConfigError as e:
        click.echo(f"配置错误: {e}", err=True)
        sys.exit(int(ExitCode.INVALID_DEFINITION))
    except ContainerUnreachableError as e:
        click.echo(f"容器运行时不可达: {e}", err=True)
        sys.exit(int(ExitCode.INFRA_ERROR))
    except (StageflowError, ValueError) as e:
        click.echo(f"运行失败: {e}", err=True)
        sys.exit(int(ExitCode.INFRA_ERROR))
    finally:
        signal.signal(signal.SIGINT, previous)

    for e in report.entries:
        click.echo(f"  {e.name:24s} {e.outcome}")
    click.echo(f"结论: {report.verdict.value} (退出码 {int(report.exit_code)})")
    for path in report.outputs:
        click.echo(f"报告: {path}")
    sys.exit(int(report.exit_code))


@click.command()
@click.argument("definition", type=click.Path(dir_okay=False))
@click.option("--param", "-p", multiple=True, help="定义参数，格式: key=value")
@click.pass_obj
def validate(svc: ServiceContainer, definition: str, param: tuple[str, ...]) -> None:
    """校验流水线定义，不执行任何命令"""
    from stageflow.services.run_service import RunService

    try:
        loaded = RunService(svc).load(definition, _parse_kv_pairs(param))
    except ValidationError as e:
        _echo_validation(e)
        sys.exit(int(ExitCode.INVALID_DEFINITION))
    except ConfigError as e:
        click.echo(f"配置错误: {e}", err=True)
        sys.exit(int(ExitCode.INVALID_DEFINITION))

    click.echo(f"定义有效: {loaded.name}")
    for unit in loaded.units:
        members = getattr(unit, "members", None)
        if members is not None:
            click.echo(f"  [并行] {unit.name}: {', '.join(m.name for m in members)}")
        else:
            click.echo(f"  {unit.name} ({unit.failure_policy.value}, {len(unit.commands)} 条命令)")
