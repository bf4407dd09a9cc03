"""Native tool handling: approval, sandbox selection, execution, result payload."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Sequence

from agent_runtime.apply_patch import affected_files, apply_patch_in_dir, extract_patch
from agent_runtime.approvals import (
    ApprovalGate,
    ApprovalOutcome,
    command_action,
    derive_command_key,
    rejection_message,
)
from agent_runtime.config import AgentConfig, FullAutoErrorMode
from agent_runtime.errors import DiffError, SandboxUnavailableError
from agent_runtime.exec import ExecInput, ExecResult, SandboxedExecutor
from agent_runtime.items import ConversationItem, error_content, user_text
from agent_runtime.ports import CancellationToken
from agent_runtime.sandbox import SandboxType, select_sandbox

logger = logging.getLogger(__name__)


@dataclass
class HandledCommand:
    """Tool-result content for one native call, plus what the loop must do next."""

    content: str
    additional_items: list[ConversationItem] = field(default_factory=list)
    abort: bool = False


def _result_content(result: ExecResult) -> str:
    if result.spawn_error is not None:
        return error_content(
            result.spawn_error,
            metadata={"exit_code": result.exit_code, "duration_seconds": round(result.duration_ms / 1000, 1)},
        )
    metadata: dict[str, object] = {
        "exit_code": result.exit_code,
        "duration_seconds": round(result.duration_ms / 1000, 1),
    }
    if result.timed_out:
        metadata["timed_out"] = True
    return json.dumps({"output": result.stdout or result.stderr, "metadata": metadata})


def _rejected(outcome: ApprovalOutcome, message: str) -> HandledCommand:
    note = outcome.deny_note()
    return HandledCommand(
        content=error_content(message),
        additional_items=[user_text(note)] if note else [],
        abort=outcome.abort,
    )


def _patch_summary(patch: str) -> str:
    files = affected_files(patch)
    if len(files) == 1:
        return (
            f"Patch successfully applied to '{files[0]}'. The file content has changed. "
            "Re-read it before performing further operations on it."
        )
    if files:
        return (
            f"Patch successfully applied. The following files have changed: [{', '.join(files)}]. "
            "Re-read them before performing further operations."
        )
    return "Patch successfully applied. Re-read any affected files if necessary."


def _apply_patch(patch: str, cwd: str, writable_roots: Sequence[str]) -> ExecResult:
    try:
        apply_patch_in_dir(patch, cwd, writable_roots)
    except (DiffError, OSError) as exc:
        logger.info("apply_patch failed: %s", exc)
        return ExecResult(stdout="", stderr=str(exc), exit_code=1)
    return ExecResult(stdout=_patch_summary(patch), stderr="", exit_code=0)


async def _run(
    exec_input: ExecInput,
    patch: str | None,
    sandbox: SandboxType,
    executor: SandboxedExecutor,
    cancel: CancellationToken | None,
    writable_roots: Sequence[str] = (),
) -> ExecResult:
    if patch is not None:
        return _apply_patch(patch, exec_input.workdir or os.getcwd(), writable_roots)
    logger.info("EXEC running %r in workdir=%s sandbox=%s", list(exec_input.cmd), exec_input.workdir, sandbox.value)
    return await executor.execute(exec_input, sandbox, cancel)


async def handle_exec_command(
    exec_input: ExecInput,
    *,
    config: AgentConfig,
    gate: ApprovalGate,
    executor: SandboxedExecutor,
    cancel: CancellationToken | None = None,
) -> HandledCommand:
    """Run one native command or patch end to end.

    Raises ``RunCancelled`` when the token fires mid-execution; every other
    failure is folded into the returned content.
    """
    cmd = list(exec_input.cmd)
    patch = extract_patch(cmd)
    action = command_action(cmd, patch)

    if gate.is_always_approved(derive_command_key(cmd)):
        result = await _run(exec_input, patch, SandboxType.NONE, executor, cancel, config.writable_roots)
        return HandledCommand(_result_content(result))

    outcome = await gate.review(action)
    if not outcome.approved:
        return _rejected(outcome, rejection_message(action))

    try:
        sandbox = select_sandbox(outcome.run_in_sandbox)
    except SandboxUnavailableError as exc:
        logger.error("Refusing to run %r: %s", cmd, exc)
        return HandledCommand(error_content(str(exc)))

    result = await _run(exec_input, patch, sandbox, executor, cancel, config.writable_roots)

    if (
        result.exit_code != 0
        and sandbox is not SandboxType.NONE
        and config.full_auto_error_mode is FullAutoErrorMode.ASK_USER
    ):
        logger.info("Sandboxed command failed (exit=%d); asking to re-run unsandboxed", result.exit_code)
        retry = await gate.ask(action)
        if not retry.approved:
            return _rejected(retry, rejection_message(action))
        result = await _run(exec_input, patch, SandboxType.NONE, executor, cancel, config.writable_roots)

    return HandledCommand(_result_content(result))
