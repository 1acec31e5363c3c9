"""CLI：杂项命令（模板渲染、报告、历史、看板）"""

from __future__ import annotations

import json
import sys
from pathlib import Path

import click

from stageflow.cli import _parse_kv_pairs
from stageflow.core.models import ExitCode
from stageflow.services.container import ServiceContainer


def register(group: click.Group) -> None:
    group.add_command(render)
    group.add_command(report)
    group.add_command(history_group)
    group.add_command(dashboard)


# ---- 模板渲染 ----

@click.command()
@click.argument("template", type=click.Path(exists=True, dir_okay=False))
@click.argument("output", type=click.Path(dir_okay=False))
@click.option("--var", "-v", "variables", multiple=True, help="模板变量 key=value（可多次指定）")
@click.pass_obj
def render(svc: ServiceContainer, template: str, output: str, variables: tuple[str, ...]) -> None:
    """渲染 Jinja2 模板（例如 Dockerfile.j2 → Dockerfile）"""
    result = svc.renderer.render(template, output, _parse_kv_pairs(variables))
    if not result.success:
        click.echo(result.stderr, err=True)
        sys.exit(int(ExitCode.STAGE_FAILED))
    click.echo(f"已渲染: {output}")


# ---- 报告 ----

@click.command()
@click.argument("build_id")
@click.option("--format", "-f", "fmt", default="txt", type=click.Choice(["txt", "json", "xml"]))
@click.pass_obj
def report(svc: ServiceContainer, build_id: str, fmt: str) -> None:
    """输出已生成的运行报告"""
    path = Path(svc.config.report_dir) / f"run-{build_id}.{fmt}"
    if not path.exists():
        click.echo(f"报告不存在: {path}", err=True)
        sys.exit(int(ExitCode.STAGE_FAILED))
    click.echo(path.read_text(encoding="utf-8"), nl=False)


# ---- 历史 ----

@click.group(name="history")
def history_group() -> None:
    """运行历史查询"""


@history_group.command(name="list")
@click.option("--pipeline", default=None, help="按流水线过滤")
@click.option("--limit", "-n", default=20, help="最多显示条数")
@click.pass_obj
def history_list(svc: ServiceContainer, pipeline: str | None, limit: int) -> None:
    """列出最近的运行"""
    records = svc.history.query(pipeline=pipeline, limit=limit)
    if not records:
        click.echo("没有运行记录。")
        return
    for r in records:
        s = r.get("summary", {})
        click.echo(
            f"  {r['run_id']:8s} {r['timestamp'][:19]}  {r['pipeline']:16s} "
            f"{r['verdict']:9s} build={r['build_id']} "
            f"ok={s.get('succeeded', 0)}/{s.get('total', 0)}",
        )


@history_group.command(name="show")
@click.argument("run_id")
@click.pass_obj
def history_show(svc: ServiceContainer, run_id: str) -> None:
    """查看单次运行（run_id 或 build_id）"""
    record = svc.history.get(run_id)
    if record is None:
        click.echo(f"运行记录不存在: {run_id}", err=True)
        sys.exit(int(ExitCode.STAGE_FAILED))
    click.echo(json.dumps(record, indent=2, ensure_ascii=False))


@history_group.command(name="stage")
@click.argument("stage_name")
@click.pass_obj
def history_stage(svc: ServiceContainer, stage_name: str) -> None:
    """单个阶段的历史成功率"""
    s = svc.history.stage_summary(stage_name)
    click.echo(
        f"{s['stage']}: {s['total_runs']} 次运行, 成功 {s['succeeded']}, "
        f"失败 {s['failed']}, 成功率 {s['success_rate']}%",
    )


# ---- 看板 ----

@click.command()
@click.option("--host", default="127.0.0.1", help="监听地址")
@click.option("--port", default=8888, help="监听端口")
@click.pass_obj
def dashboard(svc: ServiceContainer, host: str, port: int) -> None:
    """启动轻量级 Web 看板与 API"""
    from stageflow.web.app import run_server
    run_server(svc, host=host, port=port)
