"""Sandboxed executor: runs one native command as an asyncio subprocess.

Never raises for execution failures. Non-zero exits, timeouts and spawn
errors all come back as an ``ExecResult``; spawn failures set
``spawn_error`` so the loop can report them as an error tool result.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shlex
import signal
import time
from dataclasses import dataclass
from typing import Sequence

from agent_runtime.errors import SandboxUnavailableError
from agent_runtime.ports import CancellationToken, RunCancelled
from agent_runtime.sandbox import (
    SandboxType,
    adapt_command_for_platform,
    requires_shell,
    wrap_command,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_MS = 10_000
DEFAULT_MAX_OUTPUT_BYTES = 100_000
TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True)
class ExecInput:
    cmd: tuple[str, ...]
    workdir: str | None = None
    timeout_ms: int | None = None


@dataclass
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int
    duration_ms: int = 0
    timed_out: bool = False
    cancelled: bool = False
    spawn_error: str | None = None


def _truncate_output(data: bytes, limit: int | None) -> str:
    text = data.decode("utf-8", errors="replace")
    if limit is None or len(data) <= limit:
        return text
    head = data[: limit // 2].decode("utf-8", errors="replace")
    tail = data[-(limit - limit // 2):].decode("utf-8", errors="replace")
    removed = len(data) - limit
    return f"{head}\n...[truncated {removed} bytes]...\n{tail}"


def _shell_line(argv: Sequence[str]) -> str:
    return argv[0] if len(argv) == 1 else shlex.join(argv)


def _kill(proc: asyncio.subprocess.Process) -> None:
    if proc.returncode is not None:
        return
    try:
        if os.name == "posix":
            os.killpg(proc.pid, signal.SIGKILL)
        else:
            proc.kill()
    except ProcessLookupError:
        return


class SandboxedExecutor:
    """Spawns commands, optionally wrapped in a sandbox."""

    def __init__(
        self,
        *,
        writable_roots: Sequence[str] = (),
        container_wrapper: str | None = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        max_output_bytes: int | None = DEFAULT_MAX_OUTPUT_BYTES,
    ) -> None:
        self.writable_roots = tuple(writable_roots)
        self.container_wrapper = container_wrapper
        self.default_timeout_ms = default_timeout_ms
        self.max_output_bytes = max_output_bytes

    def build_argv(self, exec_input: ExecInput, sandbox: SandboxType) -> tuple[list[str], bool]:
        """Final argv after platform adaptation and sandbox wrapping, plus shell flag.

        A single-string command is split into argv unless it contains shell
        operators, in which case it runs through the shell.
        """
        cmd = list(exec_input.cmd)
        use_shell = requires_shell(cmd)
        if len(cmd) == 1 and not use_shell:
            cmd = shlex.split(cmd[0], posix=os.name == "posix") or cmd
        adapted, adapted_needs_shell = adapt_command_for_platform(cmd)
        use_shell = use_shell or adapted_needs_shell
        workdir = exec_input.workdir or os.getcwd()
        if sandbox is SandboxType.MACOS_SEATBELT and use_shell:
            adapted = ["/bin/sh", "-c", _shell_line(adapted)]
        argv = wrap_command(
            adapted,
            sandbox,
            workdir=workdir,
            writable_roots=self.writable_roots or (workdir,),
            container_wrapper=self.container_wrapper,
        )
        if sandbox is not SandboxType.NONE:
            # The wrapper is itself an executable; shell handling moves inside it.
            use_shell = False
        return argv, use_shell

    async def _spawn(self, argv: list[str], use_shell: bool, cwd: str | None) -> asyncio.subprocess.Process:
        kwargs = {
            "stdout": asyncio.subprocess.PIPE,
            "stderr": asyncio.subprocess.PIPE,
            "stdin": asyncio.subprocess.DEVNULL,
            "cwd": cwd,
        }
        if os.name == "posix":
            kwargs["start_new_session"] = True
        if use_shell:
            return await asyncio.create_subprocess_shell(_shell_line(argv), **kwargs)
        return await asyncio.create_subprocess_exec(*argv, **kwargs)

    async def execute(
        self,
        exec_input: ExecInput,
        sandbox: SandboxType = SandboxType.NONE,
        cancel: CancellationToken | None = None,
    ) -> ExecResult:
        if not exec_input.cmd:
            return ExecResult("", "command is empty", 1, spawn_error="command is empty")

        try:
            argv, use_shell = self.build_argv(exec_input, sandbox)
        except SandboxUnavailableError as exc:
            logger.error("Refusing to run %r: %s", list(exec_input.cmd), exc)
            return ExecResult("", str(exc), 1, spawn_error=str(exc))
        timeout_ms = exec_input.timeout_ms or self.default_timeout_ms
        start = time.monotonic()

        def _elapsed() -> int:
            return int((time.monotonic() - start) * 1000)

        try:
            proc = await self._spawn(argv, use_shell, exec_input.workdir)
        except (FileNotFoundError, NotADirectoryError) as exc:
            message = f"command not found: {argv[0]}" if isinstance(exc, FileNotFoundError) else str(exc)
            return ExecResult("", message, 127, _elapsed(), spawn_error=message)
        except PermissionError as exc:
            message = f"permission denied: {exc}"
            return ExecResult("", message, 126, _elapsed(), spawn_error=message)
        except OSError as exc:
            return ExecResult("", str(exc), 1, _elapsed(), spawn_error=str(exc))

        communicate = asyncio.wait_for(proc.communicate(), timeout=timeout_ms / 1000)
        try:
            if cancel is not None:
                stdout, stderr = await cancel.guard(communicate)
            else:
                stdout, stderr = await communicate
        except asyncio.TimeoutError:
            _kill(proc)
            await proc.wait()
            logger.info("EXEC timed out after %dms: %s", timeout_ms, argv[0])
            return ExecResult(
                "",
                f"command timed out after {timeout_ms} milliseconds",
                TIMEOUT_EXIT_CODE,
                _elapsed(),
                timed_out=True,
            )
        except (RunCancelled, asyncio.CancelledError):
            _kill(proc)
            await proc.wait()
            raise

        result = ExecResult(
            stdout=_truncate_output(stdout, self.max_output_bytes),
            stderr=_truncate_output(stderr, self.max_output_bytes),
            exit_code=proc.returncode if proc.returncode is not None else 1,
            duration_ms=_elapsed(),
        )
        logger.debug("EXEC exit=%d time=%dms", result.exit_code, result.duration_ms)
        return result
