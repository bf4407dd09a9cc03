"""Interfaces the caller plugs into the loop, plus the cancellation token.

A terminal UI, a test harness and a headless runner all implement the same
ports; the loop never talks to a UI directly.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Protocol, TypeVar, runtime_checkable

from agent_runtime.items import ConversationItem

T = TypeVar("T")


class ActionKind(str, Enum):
    COMMAND = "command"
    FILE_EDIT = "file-edit"
    REMOTE_TOOL = "remote-tool"


class ReviewDecision(str, Enum):
    """Answer from the confirmation port."""

    YES = "yes"
    ALWAYS = "always"
    NO_CONTINUE = "no-continue"
    NO_EXIT = "no-exit"

    @property
    def approved(self) -> bool:
        return self in (ReviewDecision.YES, ReviewDecision.ALWAYS)


@dataclass(frozen=True)
class ActionRequest:
    """Description of an action awaiting approval."""

    kind: ActionKind
    description: str
    command: tuple[str, ...] = ()
    patch: str | None = None
    server: str | None = None
    tool: str | None = None
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class CommandConfirmation:
    review: ReviewDecision
    custom_deny_message: str | None = None


@runtime_checkable
class ConfirmationPort(Protocol):
    """Asks someone outside the loop whether an action may run.

    May wait indefinitely. The loop serializes calls per instance.
    """

    async def confirm(self, action: ActionRequest) -> CommandConfirmation | ReviewDecision: ...


@runtime_checkable
class ItemSink(Protocol):
    """Receives every item the loop produces, in causal order. Must not block."""

    def emit(self, item: ConversationItem) -> None: ...


class RunCancelled(Exception):
    """Raised inside the loop when the cancellation token fires."""


class CancellationToken:
    """Explicit cancellation signal threaded through every suspending call.

    The boundary layer (CLI, server) translates OS signals or disconnects
    into ``cancel()``.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise RunCancelled()

    async def guard(self, awaitable: Awaitable[T]) -> T:
        """Await ``awaitable`` unless cancelled first; the loser is cancelled."""
        if self._event.is_set():
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise RunCancelled()
        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()
        if work in done:
            return work.result()
        work.cancel()
        await asyncio.gather(work, return_exceptions=True)
        raise RunCancelled()
