"""Approval Gate: decides whether an action runs, asks, or is refused.

Policy table:

    policy      command                  file edit     remote tool
    suggest     ask                      ask           ask
    auto-edit   ask                      auto-approve  ask
    full-auto   auto-approve, sandboxed  auto-approve  auto-approve

The confirmation port is never called for auto-approved actions, and calls
to it are serialized per gate.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import shlex
from dataclasses import dataclass
from typing import Sequence

from agent_runtime.apply_patch import extract_patch
from agent_runtime.config import ApprovalPolicy
from agent_runtime.ports import (
    ActionKind,
    ActionRequest,
    CommandConfirmation,
    ConfirmationPort,
    ReviewDecision,
)
from agent_runtime.sandbox import requires_shell

logger = logging.getLogger(__name__)

NOT_CONFIRMED = "not confirmed"
DEFAULT_CONTINUE_NOTE = "No, don't do that. Keep going though."
DEFAULT_STOP_NOTE = "No, don't do that. Stop for now."


def derive_command_key(cmd: Sequence[str]) -> str:
    """Stable key for a class of commands, or ``""`` when it must not be cached.

    Patches share one key regardless of patch text, and simple ``bash -lc``
    scripts key on the first word of the script. Any other argv keys on the
    full argv. Scripts and single strings containing shell operators are
    never cached.
    """
    if not cmd:
        return ""
    if extract_patch(cmd) is not None:
        return "apply_patch"
    if cmd[0] == "bash" and len(cmd) >= 2 and cmd[1] == "-lc":
        script = cmd[2] if len(cmd) >= 3 else ""
        if requires_shell((script,)):
            return ""
        words = script.split()
        return words[0] if words else "bash"
    if requires_shell(cmd):
        return ""
    return json.dumps(list(cmd))


def format_command_for_display(cmd: Sequence[str]) -> str:
    if len(cmd) >= 3 and cmd[0] == "bash" and cmd[1] == "-lc":
        return cmd[2]
    return shlex.join(cmd)


@dataclass(frozen=True)
class ApprovalOutcome:
    """Result of passing one action through the gate.

    ``decision`` is None when the policy auto-approved without asking.
    """

    approved: bool
    decision: ReviewDecision | None = None
    run_in_sandbox: bool = False
    custom_deny_message: str | None = None

    @property
    def abort(self) -> bool:
        return self.decision is ReviewDecision.NO_EXIT

    def deny_note(self) -> str | None:
        """User-facing note appended after the tool results of a rejection."""
        if self.approved:
            return None
        if self.decision is ReviewDecision.NO_CONTINUE:
            custom = (self.custom_deny_message or "").strip()
            return custom or DEFAULT_CONTINUE_NOTE
        return DEFAULT_STOP_NOTE


def rejection_message(action: ActionRequest) -> str:
    """Error text for a refused action; always contains ``NOT_CONFIRMED``."""
    if action.kind is ActionKind.REMOTE_TOOL:
        return f"Tool call {action.server}.{action.tool} {NOT_CONFIRMED} by user"
    if action.kind is ActionKind.FILE_EDIT:
        return f"File edit {NOT_CONFIRMED} by user"
    return f"Command {NOT_CONFIRMED} by user"


_AUTO_APPROVED: dict[ApprovalPolicy, frozenset[ActionKind]] = {
    ApprovalPolicy.SUGGEST: frozenset(),
    ApprovalPolicy.AUTO_EDIT: frozenset({ActionKind.FILE_EDIT}),
    ApprovalPolicy.FULL_AUTO: frozenset(ActionKind),
}


class ApprovalGate:
    def __init__(self, policy: ApprovalPolicy, port: ConfirmationPort) -> None:
        self.policy = policy
        self.port = port
        self._lock = asyncio.Lock()
        self._always_approved: set[str] = set()

    def requires_confirmation(self, kind: ActionKind) -> bool:
        return kind not in _AUTO_APPROVED[self.policy]

    def sandboxed(self, kind: ActionKind) -> bool:
        """full-auto commands run inside the platform sandbox."""
        return self.policy is ApprovalPolicy.FULL_AUTO and kind is ActionKind.COMMAND

    def is_always_approved(self, key: str) -> bool:
        return bool(key) and key in self._always_approved

    async def review(self, action: ActionRequest) -> ApprovalOutcome:
        """Apply the policy table; ask the port only when the table says so."""
        if not self.requires_confirmation(action.kind):
            logger.debug("Auto-approved %s under %s", action.kind.value, self.policy.value)
            return ApprovalOutcome(approved=True, run_in_sandbox=self.sandboxed(action.kind))
        return await self.ask(action)

    async def ask(self, action: ActionRequest) -> ApprovalOutcome:
        """Ask the confirmation port, regardless of policy. Never sandboxed."""
        async with self._lock:
            answer = await self.port.confirm(action)
        if isinstance(answer, ReviewDecision):
            answer = CommandConfirmation(review=answer)

        decision = answer.review
        if decision is ReviewDecision.ALWAYS and action.command:
            key = derive_command_key(action.command)
            if key:
                self._always_approved.add(key)
                logger.info("Always approving %r for this session", key)

        if not decision.approved:
            logger.info("%s rejected: %s", action.kind.value, decision.value)
        return ApprovalOutcome(
            approved=decision.approved,
            decision=decision,
            custom_deny_message=answer.custom_deny_message,
        )


_WS = re.compile(r"\s+")


def command_action(cmd: Sequence[str], patch: str | None = None) -> ActionRequest:
    """ActionRequest for a native command or patch."""
    if patch is not None:
        return ActionRequest(
            kind=ActionKind.FILE_EDIT,
            description="apply_patch",
            command=tuple(cmd),
            patch=patch,
        )
    return ActionRequest(
        kind=ActionKind.COMMAND,
        description=_WS.sub(" ", format_command_for_display(cmd)).strip(),
        command=tuple(cmd),
    )


def remote_tool_action(server: str, tool: str, arguments: dict) -> ActionRequest:
    return ActionRequest(
        kind=ActionKind.REMOTE_TOOL,
        description=f"{server}.{tool}",
        server=server,
        tool=tool,
        arguments=dict(arguments),
    )
