"""Tests for the approval gate and command keys."""

from __future__ import annotations

import asyncio

import pytest

from agent_runtime.approvals import (
    DEFAULT_CONTINUE_NOTE,
    DEFAULT_STOP_NOTE,
    NOT_CONFIRMED,
    ApprovalGate,
    command_action,
    derive_command_key,
    rejection_message,
    remote_tool_action,
)
from agent_runtime.config import ApprovalPolicy
from agent_runtime.ports import ActionKind, ActionRequest, CommandConfirmation, ReviewDecision


class RecordingPort:
    def __init__(self, answer: CommandConfirmation | ReviewDecision = ReviewDecision.YES, delay: float = 0.0):
        self.answer = answer
        self.delay = delay
        self.calls: list[ActionRequest] = []
        self.active = 0
        self.max_active = 0

    async def confirm(self, action: ActionRequest):
        self.calls.append(action)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        await asyncio.sleep(self.delay)
        self.active -= 1
        return self.answer


COMMAND = command_action(["ls", "-la"])
PATCH = command_action(["apply_patch", "*** Begin Patch\n*** End Patch"], "*** Begin Patch\n*** End Patch")
REMOTE = remote_tool_action("calc", "add", {"num1": 5, "num2": 3})


# ---------------------------------------------------------------------------
# Command keys
# ---------------------------------------------------------------------------


class TestDeriveCommandKey:
    def test_argv_keys_on_full_command(self):
        assert derive_command_key(["ls", "-la"]) == '["ls", "-la"]'
        assert derive_command_key(["ls", "-la"]) != derive_command_key(["ls", "/etc"])

    def test_apply_patch_ignores_patch_text(self):
        assert derive_command_key(["apply_patch", "*** Begin Patch..."]) == "apply_patch"
        assert derive_command_key(["bash", "-lc", "apply_patch <<'EOF'\n...\nEOF"]) == "apply_patch"

    def test_apply_patch_prefix_alone_is_not_a_patch(self):
        assert derive_command_key(["bash", "-lc", "apply_patch && rm -rf ~"]) == ""

    def test_bash_script_head(self):
        assert derive_command_key(["bash", "-lc", "git status --short"]) == "git"
        assert derive_command_key(["bash", "-lc", ""]) == "bash"

    def test_shell_operators_are_never_cached(self):
        assert derive_command_key(["ls && rm -rf ~/important"]) == ""
        assert derive_command_key(["bash", "-lc", "ls; rm -rf ~"]) == ""

    def test_single_string_without_operators(self):
        assert derive_command_key(["npm test -- --watch"]) == '["npm test -- --watch"]'


# ---------------------------------------------------------------------------
# Policy table
# ---------------------------------------------------------------------------


class TestPolicyTable:
    @pytest.mark.parametrize("action", [COMMAND, PATCH, REMOTE])
    @pytest.mark.asyncio
    async def test_suggest_asks_for_everything(self, action):
        port = RecordingPort()
        outcome = await ApprovalGate(ApprovalPolicy.SUGGEST, port).review(action)
        assert outcome.approved
        assert port.calls == [action]
        assert outcome.run_in_sandbox is False

    @pytest.mark.asyncio
    async def test_auto_edit_approves_patches_only(self):
        port = RecordingPort()
        gate = ApprovalGate(ApprovalPolicy.AUTO_EDIT, port)
        assert (await gate.review(PATCH)).approved
        assert port.calls == []
        await gate.review(COMMAND)
        await gate.review(REMOTE)
        assert [c.kind for c in port.calls] == [ActionKind.COMMAND, ActionKind.REMOTE_TOOL]

    @pytest.mark.asyncio
    async def test_full_auto_never_asks_and_sandboxes_commands(self):
        port = RecordingPort()
        gate = ApprovalGate(ApprovalPolicy.FULL_AUTO, port)
        command = await gate.review(COMMAND)
        patch = await gate.review(PATCH)
        remote = await gate.review(REMOTE)
        assert port.calls == []
        assert command.approved and command.run_in_sandbox
        assert patch.approved and not patch.run_in_sandbox
        assert remote.approved and not remote.run_in_sandbox


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class TestDecisions:
    @pytest.mark.asyncio
    async def test_always_caches_command_key(self):
        gate = ApprovalGate(ApprovalPolicy.SUGGEST, RecordingPort(ReviewDecision.ALWAYS))
        assert not gate.is_always_approved(derive_command_key(["ls", "-la"]))
        outcome = await gate.review(COMMAND)
        assert outcome.approved
        assert gate.is_always_approved(derive_command_key(["ls", "-la"]))

    @pytest.mark.asyncio
    async def test_no_continue_uses_custom_message(self):
        port = RecordingPort(CommandConfirmation(ReviewDecision.NO_CONTINUE, "Use git diff instead"))
        outcome = await ApprovalGate(ApprovalPolicy.SUGGEST, port).review(COMMAND)
        assert not outcome.approved
        assert not outcome.abort
        assert outcome.deny_note() == "Use git diff instead"

    @pytest.mark.asyncio
    async def test_no_continue_default_note(self):
        outcome = await ApprovalGate(ApprovalPolicy.SUGGEST, RecordingPort(ReviewDecision.NO_CONTINUE)).review(COMMAND)
        assert outcome.deny_note() == DEFAULT_CONTINUE_NOTE

    @pytest.mark.asyncio
    async def test_no_exit_aborts(self):
        outcome = await ApprovalGate(ApprovalPolicy.SUGGEST, RecordingPort(ReviewDecision.NO_EXIT)).review(COMMAND)
        assert outcome.abort
        assert outcome.deny_note() == DEFAULT_STOP_NOTE

    @pytest.mark.asyncio
    async def test_confirmations_are_serialized(self):
        port = RecordingPort(delay=0.02)
        gate = ApprovalGate(ApprovalPolicy.SUGGEST, port)
        await asyncio.gather(*(gate.review(COMMAND) for _ in range(4)))
        assert len(port.calls) == 4
        assert port.max_active == 1

    def test_rejection_messages_say_not_confirmed(self):
        for action in (COMMAND, PATCH, REMOTE):
            assert NOT_CONFIRMED in rejection_message(action)
