"""File edits in the ``*** Begin Patch`` envelope format.

    *** Begin Patch
    *** Update File: src/app.py
    @@ def main():
    -    print("hi")
    +    print("hello")
    *** End Patch

Supports Add / Delete / Update (with optional ``*** Move to:``) sections.
Context lines are located exactly first, then ignoring trailing whitespace,
then ignoring surrounding whitespace.
"""

from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Sequence

from agent_runtime.errors import DiffError

PATCH_PREFIX = "*** Begin Patch"
PATCH_SUFFIX = "*** End Patch"
ADD_FILE_PREFIX = "*** Add File: "
DELETE_FILE_PREFIX = "*** Delete File: "
UPDATE_FILE_PREFIX = "*** Update File: "
MOVE_FILE_TO_PREFIX = "*** Move to: "
END_OF_FILE_PREFIX = "*** End of File"
HUNK_ADD_LINE_PREFIX = "+"

_SECTION_PREFIXES = (PATCH_SUFFIX, UPDATE_FILE_PREFIX, DELETE_FILE_PREFIX, ADD_FILE_PREFIX)
_HEREDOC_RE = re.compile(r"^apply_patch\s+<<\s*['\"]?(\w+)['\"]?\s*\n(.*)\n\1\s*$", re.DOTALL)


class ActionType(str, Enum):
    ADD = "add"
    DELETE = "delete"
    UPDATE = "update"


@dataclass
class Chunk:
    orig_index: int
    del_lines: list[str] = field(default_factory=list)
    ins_lines: list[str] = field(default_factory=list)


@dataclass
class PatchAction:
    type: ActionType
    new_file: str | None = None
    chunks: list[Chunk] = field(default_factory=list)
    move_path: str | None = None


@dataclass
class FileChange:
    type: ActionType
    old_content: str | None = None
    new_content: str | None = None
    move_path: str | None = None


@dataclass
class Commit:
    changes: dict[str, FileChange] = field(default_factory=dict)


def _normalize(text: str) -> str:
    return text.replace("\r\n", "\n").replace("\r", "\n")


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def _find_context_core(lines: list[str], context: list[str], start: int) -> tuple[int, int]:
    if not context:
        return start, 0
    n = len(context)
    for transform, fuzz in ((lambda s: s, 0), (str.rstrip, 1), (str.strip, 100)):
        wanted = [transform(c) for c in context]
        for i in range(start, len(lines) - n + 1):
            if [transform(s) for s in lines[i:i + n]] == wanted:
                return i, fuzz
    return -1, 0


def _find_context(lines: list[str], context: list[str], start: int, eof: bool) -> tuple[int, int]:
    if not eof:
        return _find_context_core(lines, context, start)
    if not context:
        return len(lines), 0
    index, fuzz = _find_context_core(lines, context, max(0, len(lines) - len(context)))
    if index != -1:
        return index, fuzz
    index, fuzz = _find_context_core(lines, context, start)
    return index, fuzz + 10_000 if index != -1 else 0


def _peek_next_section(lines: list[str], index: int) -> tuple[list[str], list[Chunk], int, bool]:
    old: list[str] = []
    del_lines: list[str] = []
    ins_lines: list[str] = []
    chunks: list[Chunk] = []
    mode = "keep"
    eof = False

    while index < len(lines):
        s = lines[index]
        if s == "@@" or s.startswith("@@ ") or s.startswith(tuple(p.strip() for p in _SECTION_PREFIXES)):
            break
        if s.strip() == END_OF_FILE_PREFIX:
            eof = True
            index += 1
            break
        last_mode = mode
        if s.startswith(HUNK_ADD_LINE_PREFIX):
            mode = "add"
        elif s.startswith("-"):
            mode = "delete"
        elif s.startswith(" "):
            mode = "keep"
        else:
            # Tolerate context lines whose leading space was dropped.
            mode = "keep"
            s = " " + s
        line = s[1:]
        if mode == "keep" and last_mode != mode and (ins_lines or del_lines):
            chunks.append(Chunk(len(old) - len(del_lines), del_lines, ins_lines))
            del_lines, ins_lines = [], []
        if mode == "delete":
            del_lines.append(line)
            old.append(line)
        elif mode == "add":
            ins_lines.append(line)
        else:
            old.append(line)
        index += 1

    if ins_lines or del_lines:
        chunks.append(Chunk(len(old) - len(del_lines), del_lines, ins_lines))
    return old, chunks, index, eof


class _Parser:
    def __init__(self, current_files: dict[str, str], lines: list[str]) -> None:
        self.current_files = current_files
        self.lines = lines
        self.index = 1
        self.actions: dict[str, PatchAction] = {}
        self.fuzz = 0

    def _is_done(self, prefixes: tuple[str, ...] = ()) -> bool:
        if self.index >= len(self.lines):
            return True
        return any(self.lines[self.index].startswith(p.strip()) for p in prefixes)

    def _read(self, prefix: str) -> str:
        if self.index < len(self.lines) and self.lines[self.index].startswith(prefix):
            text = self.lines[self.index][len(prefix):]
            self.index += 1
            return text
        return ""

    def parse(self) -> None:
        while not self._is_done((PATCH_SUFFIX,)):
            path = self._read(UPDATE_FILE_PREFIX)
            if path:
                if path in self.actions:
                    raise DiffError(f"Update File Error: Duplicate Path: {path}")
                move_to = self._read(MOVE_FILE_TO_PREFIX)
                if path not in self.current_files:
                    raise DiffError(f"Update File Error: Missing File: {path}")
                action = self._parse_update_file(self.current_files[path])
                action.move_path = move_to or None
                self.actions[path] = action
                continue
            path = self._read(DELETE_FILE_PREFIX)
            if path:
                if path in self.actions:
                    raise DiffError(f"Delete File Error: Duplicate Path: {path}")
                if path not in self.current_files:
                    raise DiffError(f"Delete File Error: Missing File: {path}")
                self.actions[path] = PatchAction(ActionType.DELETE)
                continue
            path = self._read(ADD_FILE_PREFIX)
            if path:
                if path in self.actions:
                    raise DiffError(f"Add File Error: Duplicate Path: {path}")
                if path in self.current_files:
                    raise DiffError(f"Add File Error: File already exists: {path}")
                self.actions[path] = self._parse_add_file()
                continue
            raise DiffError(f"Unknown Line: {self.lines[self.index]}")
        if self.index >= len(self.lines) or not self.lines[self.index].startswith(PATCH_SUFFIX):
            raise DiffError("Missing End Patch")
        self.index += 1

    def _parse_update_file(self, text: str) -> PatchAction:
        action = PatchAction(ActionType.UPDATE)
        file_lines = _normalize(text).split("\n")
        cursor = 0
        while not self._is_done(_SECTION_PREFIXES + (END_OF_FILE_PREFIX,)):
            def_str = self._read("@@ ")
            section_str = ""
            if not def_str and self.index < len(self.lines) and self.lines[self.index] == "@@":
                section_str = self.lines[self.index]
                self.index += 1
            if not (def_str or section_str or cursor == 0):
                raise DiffError(f"Invalid Line:\n{self.lines[self.index]}")
            if def_str.strip():
                cursor = self._skip_to_anchor(file_lines, def_str, cursor)
            context, chunks, end_index, eof = _peek_next_section(self.lines, self.index)
            found, fuzz = _find_context(file_lines, context, cursor, eof)
            if found == -1:
                label = "EOF Context" if eof else "Context"
                joined = "\n".join(context)
                raise DiffError(f"Invalid {label} {cursor}:\n{joined}")
            self.fuzz += fuzz
            for chunk in chunks:
                chunk.orig_index += found
                action.chunks.append(chunk)
            cursor = found + len(context)
            self.index = end_index
        return action

    def _skip_to_anchor(self, file_lines: list[str], anchor: str, cursor: int) -> int:
        """Move past the ``@@ <line>`` anchor if it occurs after the cursor."""
        if anchor not in file_lines[:cursor]:
            for i in range(cursor, len(file_lines)):
                if file_lines[i] == anchor:
                    return i + 1
        stripped = anchor.strip()
        if stripped not in (s.strip() for s in file_lines[:cursor]):
            for i in range(cursor, len(file_lines)):
                if file_lines[i].strip() == stripped:
                    self.fuzz += 1
                    return i + 1
        return cursor

    def _parse_add_file(self) -> PatchAction:
        lines: list[str] = []
        while not self._is_done(_SECTION_PREFIXES):
            s = self.lines[self.index]
            self.index += 1
            if not s.startswith(HUNK_ADD_LINE_PREFIX):
                raise DiffError(f"Invalid Add File Line: {s}")
            lines.append(s[1:])
        return PatchAction(ActionType.ADD, new_file="\n".join(lines))


def text_to_patch(text: str, orig: dict[str, str]) -> tuple[dict[str, PatchAction], int]:
    lines = _normalize(text).strip().split("\n")
    if len(lines) < 2 or lines[0] != PATCH_PREFIX or lines[-1] != PATCH_SUFFIX:
        raise DiffError("Invalid patch text: must start with '*** Begin Patch' and end with '*** End Patch'")
    parser = _Parser(orig, lines)
    parser.parse()
    return parser.actions, parser.fuzz


def identify_files_needed(text: str) -> list[str]:
    found: list[str] = []
    for line in _normalize(text).split("\n"):
        for prefix in (UPDATE_FILE_PREFIX, DELETE_FILE_PREFIX):
            if line.startswith(prefix):
                path = line[len(prefix):]
                if path not in found:
                    found.append(path)
    return found


def identify_files_added(text: str) -> list[str]:
    found: list[str] = []
    for line in _normalize(text).split("\n"):
        if line.startswith(ADD_FILE_PREFIX):
            path = line[len(ADD_FILE_PREFIX):]
            if path not in found:
                found.append(path)
    return found


# ---------------------------------------------------------------------------
# Applying
# ---------------------------------------------------------------------------


def _get_updated_file(text: str, action: PatchAction, path: str) -> str:
    line_ending = "\r\n" if "\r\n" in text else "\n"
    orig_lines = _normalize(text).split("\n")
    dest: list[str] = []
    orig_index = 0
    for chunk in action.chunks:
        if chunk.orig_index > len(orig_lines):
            raise DiffError(f"{path}: chunk.orig_index {chunk.orig_index} > len(lines) {len(orig_lines)}")
        if orig_index > chunk.orig_index:
            raise DiffError(f"{path}: orig_index {orig_index} > chunk.orig_index {chunk.orig_index}")
        dest.extend(orig_lines[orig_index:chunk.orig_index])
        dest.extend(chunk.ins_lines)
        orig_index = chunk.orig_index + len(chunk.del_lines)
    dest.extend(orig_lines[orig_index:])
    return line_ending.join(dest)


def patch_to_commit(actions: dict[str, PatchAction], orig: dict[str, str]) -> Commit:
    commit = Commit()
    for path, action in actions.items():
        if action.type is ActionType.DELETE:
            commit.changes[path] = FileChange(ActionType.DELETE, old_content=orig[path])
        elif action.type is ActionType.ADD:
            commit.changes[path] = FileChange(ActionType.ADD, new_content=action.new_file or "")
        else:
            commit.changes[path] = FileChange(
                ActionType.UPDATE,
                old_content=orig[path],
                new_content=_get_updated_file(orig[path], action, path),
                move_path=action.move_path,
            )
    return commit


def apply_commit(
    commit: Commit,
    write_fn: Callable[[str, str], None],
    remove_fn: Callable[[str], None],
) -> None:
    for path, change in commit.changes.items():
        if change.type is ActionType.DELETE:
            remove_fn(path)
        elif change.type is ActionType.ADD:
            write_fn(path, change.new_content or "")
        elif change.move_path:
            write_fn(change.move_path, change.new_content or "")
            remove_fn(path)
        else:
            write_fn(path, change.new_content or "")


def process_patch(
    text: str,
    open_fn: Callable[[str], str],
    write_fn: Callable[[str, str], None],
    remove_fn: Callable[[str], None],
) -> str:
    if not _normalize(text).startswith(PATCH_PREFIX):
        raise DiffError(f"Patch must start with {PATCH_PREFIX}")
    orig: dict[str, str] = {}
    for path in identify_files_needed(text):
        try:
            orig[path] = open_fn(path)
        except OSError as exc:
            raise DiffError(f"File not found or unreadable: {path}: {exc}") from exc
    actions, _fuzz = text_to_patch(text, orig)
    apply_commit(patch_to_commit(actions, orig), write_fn, remove_fn)
    return "Done!"


def apply_patch_in_dir(
    text: str,
    cwd: str | os.PathLike[str],
    writable_roots: Sequence[str | os.PathLike[str]] = (),
) -> str:
    """Apply ``text`` with paths resolved relative to ``cwd``.

    Every target must resolve inside ``cwd`` or one of ``writable_roots``.
    """
    root = Path(cwd)
    allowed = [root.resolve(), *(Path(r).resolve() for r in writable_roots)]

    def _resolve(p: str) -> Path:
        if os.path.isabs(p):
            raise DiffError("We do not support absolute paths.")
        target = (root / p).resolve()
        if not any(target.is_relative_to(a) for a in allowed):
            raise DiffError(f"Path escapes the writable roots: {p}")
        return target

    def _write(p: str, content: str) -> None:
        target = _resolve(p)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")

    # Write-only targets are checked before anything is written.
    for p in identify_files_added(text) + [
        line[len(MOVE_FILE_TO_PREFIX):]
        for line in _normalize(text).split("\n")
        if line.startswith(MOVE_FILE_TO_PREFIX)
    ]:
        _resolve(p)

    return process_patch(
        text,
        lambda p: _resolve(p).read_text(encoding="utf-8"),
        _write,
        lambda p: _resolve(p).unlink(),
    )


def extract_patch(command: list[str] | tuple[str, ...]) -> str | None:
    """Return the patch text when ``command`` is an apply_patch invocation.

    Accepts ``["apply_patch", patch]`` and the heredoc form
    ``["bash", "-lc", "apply_patch <<'EOF'\\n...\\nEOF"]``.
    """
    if len(command) == 2 and command[0] == "apply_patch":
        return command[1]
    if len(command) == 3 and command[0] == "bash" and command[1] == "-lc":
        match = _HEREDOC_RE.match(command[2].strip())
        if match:
            return match.group(2)
    return None


def affected_files(patch: str) -> list[str]:
    updated = [
        line[len(UPDATE_FILE_PREFIX):].strip()
        for line in _normalize(patch).split("\n")
        if line.startswith(UPDATE_FILE_PREFIX)
    ]
    out: list[str] = []
    for path in identify_files_needed(patch) + identify_files_added(patch) + updated:
        if path not in out:
            out.append(path)
    return out
