"""Web 层统一响应辅助函数"""

from __future__ import annotations

from flask import Response, jsonify


def ok(data: dict, status: int = 200) -> tuple[Response, int] | Response:
    """成功响应"""
    if status == 200:
        return jsonify(data)
    return jsonify(data), status


def not_found(resource: str) -> tuple[Response, int]:
    """资源不存在"""
    return jsonify(error=f"{resource}不存在"), 404


def bad_request(message: str, details: list[str] | None = None) -> tuple[Response, int]:
    """请求参数错误"""
    if details:
        return jsonify(error=message, details=details), 400
    return jsonify(error=message), 400


def conflict(message: str) -> tuple[Response, int]:
    """状态冲突（例如已有运行进行中）"""
    return jsonify(error=message), 409


def unavailable(message: str) -> tuple[Response, int]:
    """依赖的外部服务不可达"""
    return jsonify(error=message), 503
