"""轻量级 Web 看板（基于 Flask）

提供：运行历史、后台触发流水线、取消当前运行、报告查看、容器状态。
同一时刻只允许一个运行，运行在后台线程中执行。

启动方式: stageflow dashboard --port 8888
"""

from __future__ import annotations

import json
import logging
import re
import threading
from pathlib import Path
from typing import Any

from flask import Flask, jsonify, request
from werkzeug.exceptions import HTTPException

from stageflow import __version__
from stageflow.core.exceptions import ConfigError, ContainerUnreachableError, ValidationError
from stageflow.core.executor import CancelToken
from stageflow.services.container import ServiceContainer
from stageflow.services.run_service import RunRequest, RunService, new_build_id
from stageflow.web.responses import bad_request, conflict, not_found, ok, unavailable

logger = logging.getLogger(__name__)

MAX_CONTENT_LENGTH = 1 * 1024 * 1024  # 1 MB


def _safe_int(value: Any, default: int, lo: int = 1, hi: int = 10000) -> int:
    """安全的整数转换，带范围校验"""
    try:
        n = int(value)
    except (TypeError, ValueError):
        return default
    return max(lo, min(n, hi))


_SAFE_NAME_RE = re.compile(r"^[a-zA-Z0-9_\-.]+$")


def _validate_safe_name(value: str, field: str) -> str:
    """校验参数仅包含安全字符（字母/数字/下划线/连字符/点），防止路径注入"""
    value = str(value).strip()
    if not _SAFE_NAME_RE.match(value) or value.startswith("."):
        raise ValueError(f"参数 '{field}' 包含非法字符: {value}")
    return value


# =========================================================================
# 后台运行管理
# =========================================================================


class RunManager:
    """单运行槽位：后台线程执行，支持查询与取消"""

    def __init__(self, service: RunService) -> None:
        self.service = service
        self._lock = threading.Lock()
        self._thread: threading.Thread | None = None
        self._token: CancelToken | None = None
        self._current: dict[str, Any] = {}

    @property
    def busy(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def current(self) -> dict[str, Any]:
        with self._lock:
            return {**self._current, "running": self.busy}

    def start(self, definition: str, params: dict[str, str], build_id: str) -> dict[str, Any]:
        """启动运行；已有运行进行中时抛 RuntimeError"""
        with self._lock:
            if self.busy:
                raise RuntimeError(f"已有运行进行中: {self._current.get('build_id', '')}")
            build_id = build_id or new_build_id()
            self.service.load(definition, {**params, "build_id": build_id})
            self._token = CancelToken()
            req = RunRequest(
                definition=definition, params=params,
                build_id=build_id, cancel_token=self._token,
            )
            self._current = {"build_id": build_id, "definition": definition, "state": "running"}
            self._thread = threading.Thread(
                target=self._run, args=(req,), name=f"run-{build_id}", daemon=True,
            )
            self._thread.start()
            return dict(self._current)

    def _run(self, req: RunRequest) -> None:
        try:
            report = self.service.execute(req)
        except Exception as e:  # noqa: BLE001
            logger.exception("后台运行异常: %s", req.build_id)
            update = {"state": "error", "error": str(e)}
        else:
            update = {
                "state": report.verdict.value,
                "exit_code": int(report.exit_code),
                "cancelled": report.cancelled,
                "outputs": list(report.outputs),
            }
        with self._lock:
            self._current.update(update)

    def cancel(self) -> bool:
        with self._lock:
            if not self.busy or self._token is None:
                return False
            self._token.cancel("Web 请求取消")
            self._current["cancel_requested"] = True
            return True

    def join(self, timeout: float | None = None) -> None:
        thread = self._thread
        if thread is not None:
            thread.join(timeout)


# =========================================================================
# 应用工厂
# =========================================================================


def create_app(container: ServiceContainer | None = None) -> Flask:
    svc = container or ServiceContainer()
    runs = RunManager(RunService(svc))

    app = Flask(__name__)
    app.config["MAX_CONTENT_LENGTH"] = MAX_CONTENT_LENGTH
    app.extensions["stageflow.runs"] = runs

    @app.errorhandler(HTTPException)
    def handle_http_exception(exc):
        """将所有 HTTP 异常统一返回 JSON"""
        return jsonify(error=exc.description), exc.code

    @app.errorhandler(Exception)
    def handle_generic_exception(exc):  # noqa: ARG001
        """捕获未处理异常，返回 500 JSON"""
        logger.exception("未处理的异常")
        return jsonify(error="服务器内部错误"), 500

    @app.route("/")
    def index():
        return ok({"service": "stageflow", "version": __version__})

    # ---- 流水线定义 ----

    @app.route("/api/pipelines")
    def api_pipelines():
        """列出可触发的流水线定义"""
        pdir = Path(svc.config.pipelines_dir)
        names = sorted(p.stem for p in pdir.glob("*.yml")) if pdir.is_dir() else []
        return ok({"pipelines": names})

    # ---- 运行 ----

    @app.route("/api/runs", methods=["GET"])
    def api_runs_list():
        """查询运行历史"""
        return ok({"runs": svc.history.query(
            pipeline=request.args.get("pipeline"),
            limit=_safe_int(request.args.get("limit", 50), default=50),
        )})

    @app.route("/api/runs", methods=["POST"])
    def api_runs_start():
        """后台触发一次流水线运行"""
        body = request.get_json(silent=True) or {}
        try:
            name = _validate_safe_name(body.get("pipeline", ""), "pipeline")
            build_id = _validate_safe_name(body["build_id"], "build_id") if body.get("build_id") else ""
        except ValueError as e:
            return bad_request(str(e))
        params = body.get("params") or {}
        if not isinstance(params, dict):
            return bad_request("params 必须是对象")

        definition = Path(svc.config.pipelines_dir) / f"{name}.yml"
        if not definition.exists():
            return not_found(f"流水线 {name} ")
        try:
            current = runs.start(
                str(definition), {str(k): str(v) for k, v in params.items()}, build_id,
            )
        except RuntimeError as e:
            return conflict(str(e))
        except ValidationError as e:
            return bad_request(str(e), e.details)
        except ConfigError as e:
            return bad_request(str(e))
        return ok({"message": "运行已启动", "run": current}, 202)

    @app.route("/api/runs/current")
    def api_runs_current():
        """当前（或最近一次）后台运行状态"""
        return ok({"run": runs.current()})

    @app.route("/api/runs/cancel", methods=["POST"])
    def api_runs_cancel():
        """请求取消当前运行，在下一个单元边界生效"""
        if not runs.cancel():
            return conflict("没有进行中的运行")
        return ok({"message": "已请求取消"})

    @app.route("/api/runs/<run_id>")
    def api_runs_get(run_id: str):
        """按 run_id 或 build_id 查询运行记录"""
        record = svc.history.get(run_id)
        if record is None:
            return not_found(f"运行 {run_id} ")
        return ok({"run": record})

    @app.route("/api/runs/<build_id>/report")
    def api_runs_report(build_id: str):
        """读取 JSON 运行报告"""
        try:
            build_id = _validate_safe_name(build_id, "build_id")
        except ValueError as e:
            return bad_request(str(e))
        path = Path(svc.config.report_dir) / f"run-{build_id}.json"
        if not path.exists():
            return not_found(f"报告 {build_id} ")
        return ok({"report": json.loads(path.read_text(encoding="utf-8"))})

    @app.route("/api/stages/<stage_name>/summary")
    def api_stage_summary(stage_name: str):
        """单个阶段的历史成功率"""
        return ok({"summary": svc.history.stage_summary(stage_name)})

    # ---- 容器 ----

    @app.route("/api/containers/<name>")
    def api_container_status(name: str):
        """容器状态、健康、地址与资源快照"""
        try:
            name = _validate_safe_name(name, "name")
        except ValueError as e:
            return bad_request(str(e))
        try:
            return ok({"container": svc.lifecycle.snapshot(name)})
        except ContainerUnreachableError as e:
            return unavailable(f"容器运行时不可达: {e}")

    return app


def run_server(
    container: ServiceContainer | None = None,
    port: int = 8888, debug: bool = False, host: str = "127.0.0.1",
) -> None:
    app = create_app(container)
    logger.info("stageflow 看板已启动: http://%s:%d", host, port)
    app.run(host=host, port=port, debug=debug)
