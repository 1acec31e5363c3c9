"""命令执行器：统一子进程调用

通过 CommandExecutor 协议抽象子进程执行，方便测试替换和跨平台适配。
非零退出码不会抛异常，调用方自行解释 CommandResult.exit_code。

输出处理:
  stdout / stderr 各由一个读线程逐行读取，与进程执行并发进行，
  每行同时写入 OutputSink（默认转发到日志）、内存缓冲和可选的阶段日志文件，
  大量输出不会因管道缓冲区写满而阻塞子进程。
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
import threading
import time
from pathlib import Path
from typing import IO, Protocol

from stageflow.core.models import (
    TIMED_OUT_EXIT_CODE,
    TOOL_MISSING_EXIT_CODE,
    CommandResult,
    CommandSpec,
    ErrorCode,
)
from stageflow.utils.logger import OUTPUT_LOGGER

logger = logging.getLogger(__name__)
output_logger = logging.getLogger(OUTPUT_LOGGER)


# =========================================================================
# 输出接收器
# =========================================================================

class OutputSink(Protocol):
    """命令输出接收器协议"""

    def write(self, label: str, stream: str, line: str) -> None:
        ...


class LoggingSink:
    """默认接收器：逐行转发到 stageflow.output logger"""

    def write(self, label: str, stream: str, line: str) -> None:
        if stream == "stderr":
            output_logger.info("[%s] ! %s", label, line, extra={"stage": label})
        else:
            output_logger.info("[%s] %s", label, line, extra={"stage": label})


class NullSink:
    """丢弃输出（仍会写入捕获缓冲）"""

    def write(self, label: str, stream: str, line: str) -> None:
        pass


# =========================================================================
# 命令执行器协议
# =========================================================================

class CommandExecutor(Protocol):
    """命令执行器协议：抽象子进程调用

    实现此协议即可替换底层执行方式；测试时可注入 fake 实现，无需 patch subprocess。
    """

    def run(
        self,
        spec: CommandSpec,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        *,
        label: str = "",
        log_path: Path | None = None,
    ) -> CommandResult:
        """执行命令并返回结果，非零退出不抛异常"""
        ...


# =========================================================================
# 默认实现: 本地子进程执行器
# =========================================================================

class CommandRunner:
    """本地子进程执行器（默认实现）"""

    def __init__(self, sink: OutputSink | None = None, default_timeout: float | None = None) -> None:
        self.sink = sink or LoggingSink()
        self.default_timeout = default_timeout

    @staticmethod
    def _args(spec: CommandSpec) -> list[str]:
        if spec.shell:
            cmd = spec.command if isinstance(spec.command, str) else shlex.join(spec.command)
            return ["/bin/sh", "-c", cmd]
        return shlex.split(spec.command) if isinstance(spec.command, str) else list(spec.command)

    def run(
        self,
        spec: CommandSpec,
        cwd: str = ".",
        env: dict[str, str] | None = None,
        *,
        label: str = "",
        log_path: Path | None = None,
    ) -> CommandResult:
        label = label or spec.label
        args = self._args(spec)
        if not args:
            return CommandResult(exit_code=0, stderr="空命令")
        timeout = spec.timeout if spec.timeout is not None else self.default_timeout

        logger.info("执行: %s%s", spec.label, f" (cwd={cwd})" if cwd not in ("", ".") else "")
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                args, cwd=cwd or None, env=env,
                stdout=subprocess.PIPE, stderr=subprocess.PIPE,
                stdin=subprocess.DEVNULL,
                text=True, encoding="utf-8", errors="replace",
                start_new_session=True,
            )
        except FileNotFoundError as e:
            logger.warning("工具不存在: %s (%s)", args[0], e)
            return CommandResult(
                exit_code=TOOL_MISSING_EXIT_CODE, stderr=str(e),
                duration_ms=_elapsed_ms(start), tool_missing=True,
                error=ErrorCode.TOOL_UNAVAILABLE,
            )
        except PermissionError as e:
            return CommandResult(exit_code=126, stderr=str(e), duration_ms=_elapsed_ms(start))

        out_buf: list[str] = []
        err_buf: list[str] = []
        log_lock = threading.Lock()
        log_file = _open_log(log_path, spec.label)
        readers = [
            threading.Thread(
                target=self._pump, args=(proc.stdout, "stdout", label, out_buf, log_file, log_lock),
                daemon=True,
            ),
            threading.Thread(
                target=self._pump, args=(proc.stderr, "stderr", label, err_buf, log_file, log_lock),
                daemon=True,
            ),
        ]
        for t in readers:
            t.start()

        timed_out = False
        try:
            exit_code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.error("命令超时 (%ss)，强制终止: %s", timeout, spec.label)
            _kill_tree(proc)
            proc.wait()
            exit_code = TIMED_OUT_EXIT_CODE
        finally:
            for t in readers:
                t.join()
            if log_file is not None:
                log_file.close()

        # 工具缺失的 shell 形式: sh 返回 127
        tool_missing = spec.shell and exit_code == TOOL_MISSING_EXIT_CODE
        result = CommandResult(
            exit_code=exit_code,
            stdout="".join(out_buf),
            stderr="".join(err_buf),
            duration_ms=_elapsed_ms(start),
            timed_out=timed_out,
            tool_missing=tool_missing,
            error=(
                ErrorCode.TIMED_OUT if timed_out
                else ErrorCode.TOOL_UNAVAILABLE if tool_missing
                else ""
            ),
        )
        logger.debug("完成: %s rc=%d (%dms)", spec.label, result.exit_code, result.duration_ms)
        return result

    def _pump(
        self, stream: IO[str] | None, name: str, label: str,
        buf: list[str], log_file: IO[str] | None, log_lock: threading.Lock,
    ) -> None:
        if stream is None:
            return
        with stream:
            for line in stream:
                buf.append(line)
                self.sink.write(label, name, line.rstrip("\n"))
                if log_file is not None:
                    with log_lock:
                        log_file.write(line)


def _elapsed_ms(start: float) -> int:
    return int((time.monotonic() - start) * 1000)


def _open_log(log_path: Path | None, header: str) -> IO[str] | None:
    if log_path is None:
        return None
    log_path.parent.mkdir(parents=True, exist_ok=True)
    f = open(log_path, "a", encoding="utf-8")  # noqa: SIM115
    f.write(f"$ {header}\n")
    return f


def _kill_tree(proc: subprocess.Popen[str]) -> None:
    """终止整个进程组（shell 模式下子进程也一并终止）"""
    try:
        os.killpg(proc.pid, signal.SIGKILL)
    except (ProcessLookupError, PermissionError, AttributeError):
        proc.kill()
