"""CLI：容器生命周期命令"""

from __future__ import annotations

import json
import sys

import click

from stageflow.cli import _parse_kv_pairs
from stageflow.core.exceptions import (
    ContainerOperationError,
    ContainerUnreachableError,
    DeployError,
    ImageBuildError,
)
from stageflow.core.models import ExitCode
from stageflow.services.container import ServiceContainer


def register(group: click.Group) -> None:
    group.add_command(container_group)


def _unreachable(e: ContainerUnreachableError) -> None:
    click.echo(f"容器运行时不可达: {e}", err=True)
    sys.exit(int(ExitCode.INFRA_ERROR))


@click.group(name="container")
def container_group() -> None:
    """容器部署、状态与清理"""


@container_group.command(name="status")
@click.argument("name")
@click.pass_obj
def container_status(svc: ServiceContainer, name: str) -> None:
    """查看容器状态、健康、地址与资源快照"""
    try:
        snap = svc.lifecycle.snapshot(name)
    except ContainerUnreachableError as e:
        _unreachable(e)
    click.echo(json.dumps(snap, indent=2, ensure_ascii=False))


@container_group.command(name="build")
@click.argument("image")
@click.option("--context", default=".", help="构建上下文目录")
@click.option("--dockerfile", "-f", default="", help="Dockerfile 路径")
@click.pass_obj
def container_build(svc: ServiceContainer, image: str, context: str, dockerfile: str) -> None:
    """构建镜像"""
    try:
        svc.lifecycle.build(image, context=context, dockerfile=dockerfile)
    except ContainerUnreachableError as e:
        _unreachable(e)
    except ImageBuildError as e:
        click.echo(str(e), err=True)
        sys.exit(int(ExitCode.STAGE_FAILED))
    click.echo(f"镜像已构建: {image}")


@container_group.command(name="deploy")
@click.argument("name")
@click.argument("image")
@click.option("--restart", default="unless-stopped", help="重启策略")
@click.option("--port", "ports", multiple=True, help="端口映射 host:container（可多次指定）")
@click.option("--env", "env_pairs", multiple=True, help="环境变量 key=value（可多次指定）")
@click.pass_obj
def container_deploy(
    svc: ServiceContainer, name: str, image: str, restart: str,
    ports: tuple[str, ...], env_pairs: tuple[str, ...],
) -> None:
    """停止并移除同名容器后启动新容器"""
    try:
        handle = svc.lifecycle.deploy(
            name, image, restart_policy=restart,
            ports=list(ports), env=_parse_kv_pairs(env_pairs),
        )
    except ContainerUnreachableError as e:
        _unreachable(e)
    except (DeployError, ContainerOperationError) as e:
        click.echo(str(e), err=True)
        sys.exit(int(ExitCode.STAGE_FAILED))
    click.echo(f"容器已部署: {handle.name} ({handle.container_id}) state={handle.state.value}")


@container_group.command(name="stop")
@click.argument("name")
@click.pass_obj
def container_stop(svc: ServiceContainer, name: str) -> None:
    """停止容器（未运行时无操作）"""
    try:
        svc.lifecycle.stop(name)
    except ContainerUnreachableError as e:
        _unreachable(e)
    except ContainerOperationError as e:
        click.echo(str(e), err=True)
        sys.exit(int(ExitCode.STAGE_FAILED))
    click.echo(f"容器已停止: {name}")


@container_group.command(name="remove")
@click.argument("name")
@click.pass_obj
def container_remove(svc: ServiceContainer, name: str) -> None:
    """移除容器（不存在时无操作）"""
    try:
        svc.lifecycle.remove(name)
    except ContainerUnreachableError as e:
        _unreachable(e)
    except ContainerOperationError as e:
        click.echo(str(e), err=True)
        sys.exit(int(ExitCode.STAGE_FAILED))
    click.echo(f"容器已移除: {name}")


@container_group.command(name="logs")
@click.argument("name")
@click.option("--tail", "-n", default=None, type=int, help="末尾行数（默认取配置）")
@click.pass_obj
def container_logs(svc: ServiceContainer, name: str, tail: int | None) -> None:
    """输出容器日志末尾"""
    try:
        text = svc.lifecycle.logs(name, tail=tail or svc.config.log_tail_lines)
    except ContainerUnreachableError as e:
        _unreachable(e)
    click.echo(text, nl=not text.endswith("\n"))


@container_group.command(name="wait")
@click.argument("name")
@click.option("--interval", default=None, type=float, help="轮询间隔（秒）")
@click.option("--max-wait", default=None, type=float, help="最长等待（秒）")
@click.pass_obj
def container_wait(
    svc: ServiceContainer, name: str, interval: float | None, max_wait: float | None,
) -> None:
    """等待容器就绪，不健康时退出码为 1"""
    try:
        report = svc.health.wait_healthy(
            name,
            poll_interval=interval if interval is not None else svc.config.health_poll_interval,
            max_wait=max_wait if max_wait is not None else svc.config.health_max_wait,
        )
    except ContainerUnreachableError as e:
        _unreachable(e)
    click.echo(f"{name}: {report.verdict.value} ({report.message}, {report.waited:.1f}s)")
    if not report.healthy:
        sys.exit(int(ExitCode.STAGE_FAILED))
