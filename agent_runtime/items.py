"""Conversation items exchanged with the model."""

from __future__ import annotations

import base64
import json as _json
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

Role = Literal["user", "assistant", "tool"]


@dataclass(frozen=True)
class ToolCallRequest:
    """One tool call as emitted by the model. ``arguments`` is the raw JSON text."""

    id: str
    name: str
    arguments: str

    def to_message(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


@dataclass(frozen=True)
class ConversationItem:
    """One message in the history.

    ``content`` is text, a list of OpenAI content parts (text and images), or
    None for assistant turns that only carry tool calls.
    """

    role: Role
    content: str | list[dict[str, Any]] | None = None
    tool_calls: tuple[ToolCallRequest, ...] = ()
    tool_call_id: str | None = None

    def to_message(self) -> dict[str, Any]:
        """Serialize to the OpenAI chat-message shape litellm expects."""
        msg: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            msg["tool_calls"] = [tc.to_message() for tc in self.tool_calls]
        if self.tool_call_id is not None:
            msg["tool_call_id"] = self.tool_call_id
        return msg

    @property
    def text(self) -> str:
        if isinstance(self.content, str):
            return self.content
        if isinstance(self.content, list):
            return "\n".join(
                str(part.get("text", "")) for part in self.content if part.get("type") == "text"
            )
        return ""


@dataclass
class RunResult:
    """What a single ``AgentLoop.run`` produced."""

    items: list[ConversationItem] = field(default_factory=list)
    turns: int = 0
    cancelled: bool = False
    aborted: bool = False

    @property
    def final_message(self) -> ConversationItem | None:
        for item in reversed(self.items):
            if item.role == "assistant" and not item.tool_calls:
                return item
        return None


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def user_text(text: str) -> ConversationItem:
    return ConversationItem(role="user", content=text)


def _image_url(ref: str | Path) -> str:
    """Inline local image files as data URLs; pass remote URLs through."""
    ref_str = str(ref)
    if ref_str.startswith(("http://", "https://", "data:")):
        return ref_str
    path = Path(ref_str).expanduser()
    mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return f"data:{mime};base64,{encoded}"


def user_input(text: str, images: list[str | Path] | None = None) -> ConversationItem:
    """User item carrying text and image references."""
    if not images:
        return user_text(text)
    parts: list[dict[str, Any]] = [{"type": "text", "text": text}]
    for ref in images:
        parts.append({"type": "image_url", "image_url": {"url": _image_url(ref)}})
    return ConversationItem(role="user", content=parts)


def tool_result(call_id: str, content: str) -> ConversationItem:
    return ConversationItem(role="tool", content=content, tool_call_id=call_id)


def error_content(message: str, **extra: Any) -> str:
    """Serialized error payload embedded in a tool-result item."""
    payload: dict[str, Any] = {"error": message}
    payload.update(extra)
    return _json.dumps(payload)


def serialize_tool_output(result: Any) -> str:
    """Serialize a remote tool's response for the model.

    Pydantic results (the MCP SDK's ``CallToolResult``) are dumped without
    unset fields; everything else goes through ``json.dumps``.
    """
    if isinstance(result, str):
        return result
    dump = getattr(result, "model_dump", None)
    if callable(dump):
        result = dump(mode="json", exclude_none=True)
    try:
        return _json.dumps(result)
    except (TypeError, ValueError):
        return _json.dumps(result, default=str)
