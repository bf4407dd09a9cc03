"""Tests for the patch envelope parser and applier."""

from __future__ import annotations

from pathlib import Path

import pytest

from agent_runtime.apply_patch import (
    affected_files,
    apply_patch_in_dir,
    extract_patch,
    identify_files_added,
    identify_files_needed,
    text_to_patch,
)
from agent_runtime.errors import DiffError


def _patch(*body: str) -> str:
    return "\n".join(["*** Begin Patch", *body, "*** End Patch"])


# ---------------------------------------------------------------------------
# Applying to a directory
# ---------------------------------------------------------------------------


class TestApplyPatchInDir:
    def test_update_file(self, tmp_path: Path) -> None:
        (tmp_path / "f.txt").write_text("hello\nworld\n")
        patch = _patch("*** Update File: f.txt", "@@", "-hello", "+goodbye", " world")
        assert apply_patch_in_dir(patch, tmp_path) == "Done!"
        assert (tmp_path / "f.txt").read_text() == "goodbye\nworld\n"

    def test_update_with_anchor(self, tmp_path: Path) -> None:
        (tmp_path / "app.py").write_text('def other():\n    print("hi")\n\ndef main():\n    print("hi")\n')
        patch = _patch(
            "*** Update File: app.py",
            "@@ def main():",
            '-    print("hi")',
            '+    print("hello")',
        )
        apply_patch_in_dir(patch, tmp_path)
        assert (tmp_path / "app.py").read_text() == (
            'def other():\n    print("hi")\n\ndef main():\n    print("hello")\n'
        )

    def test_add_file_creates_parent_dirs(self, tmp_path: Path) -> None:
        patch = _patch("*** Add File: pkg/new.txt", "+line one", "+line two")
        apply_patch_in_dir(patch, tmp_path)
        assert (tmp_path / "pkg" / "new.txt").read_text() == "line one\nline two"

    def test_delete_file(self, tmp_path: Path) -> None:
        (tmp_path / "gone.txt").write_text("bye\n")
        apply_patch_in_dir(_patch("*** Delete File: gone.txt"), tmp_path)
        assert not (tmp_path / "gone.txt").exists()

    def test_move_file(self, tmp_path: Path) -> None:
        (tmp_path / "old.txt").write_text("a\nb\n")
        patch = _patch("*** Update File: old.txt", "*** Move to: new.txt", "@@", " a", "-b", "+c")
        apply_patch_in_dir(patch, tmp_path)
        assert not (tmp_path / "old.txt").exists()
        assert (tmp_path / "new.txt").read_text() == "a\nc\n"

    def test_trailing_whitespace_is_fuzzy_matched(self, tmp_path: Path) -> None:
        (tmp_path / "f.txt").write_text("x = 1   \ny = 2\n")
        patch = _patch("*** Update File: f.txt", "@@", "-x = 1", "+x = 10", " y = 2")
        apply_patch_in_dir(patch, tmp_path)
        assert (tmp_path / "f.txt").read_text() == "x = 10\ny = 2\n"

    def test_missing_file_raises(self, tmp_path: Path) -> None:
        patch = _patch("*** Update File: nope.txt", "@@", "-a", "+b")
        with pytest.raises(DiffError, match="nope.txt"):
            apply_patch_in_dir(patch, tmp_path)

    def test_context_mismatch_raises(self, tmp_path: Path) -> None:
        (tmp_path / "f.txt").write_text("alpha\nbeta\n")
        patch = _patch("*** Update File: f.txt", "@@", "-gamma", "+delta")
        with pytest.raises(DiffError, match="Invalid Context"):
            apply_patch_in_dir(patch, tmp_path)

    def test_absolute_path_rejected(self, tmp_path: Path) -> None:
        patch = _patch("*** Add File: /etc/evil", "+x")
        with pytest.raises(DiffError, match="absolute"):
            apply_patch_in_dir(patch, tmp_path)

    def test_parent_traversal_rejected(self, tmp_path: Path) -> None:
        work = tmp_path / "work"
        work.mkdir()
        patch = _patch("*** Add File: ok.txt", "+1", "*** Add File: ../outside.txt", "+x")
        with pytest.raises(DiffError, match="escapes"):
            apply_patch_in_dir(patch, work)
        assert not (tmp_path / "outside.txt").exists()
        assert not (work / "ok.txt").exists()

    def test_move_outside_rejected(self, tmp_path: Path) -> None:
        work = tmp_path / "work"
        work.mkdir()
        (work / "f.txt").write_text("a\n")
        patch = _patch("*** Update File: f.txt", "*** Move to: ../f.txt", "@@", "-a", "+b")
        with pytest.raises(DiffError, match="escapes"):
            apply_patch_in_dir(patch, work)
        assert (work / "f.txt").read_text() == "a\n"

    def test_writable_root_outside_cwd_allowed(self, tmp_path: Path) -> None:
        work = tmp_path / "work"
        shared = tmp_path / "shared"
        work.mkdir()
        shared.mkdir()
        apply_patch_in_dir(_patch("*** Add File: ../shared/note.txt", "+hi"), work, [shared])
        assert (shared / "note.txt").read_text() == "hi"

    def test_add_existing_file_raises(self, tmp_path: Path) -> None:
        (tmp_path / "f.txt").write_text("x")
        with pytest.raises(DiffError, match="already exists"):
            text_to_patch(_patch("*** Add File: f.txt", "+y"), {"f.txt": "x"})

    def test_requires_envelope(self, tmp_path: Path) -> None:
        with pytest.raises(DiffError):
            apply_patch_in_dir("*** Update File: f.txt\n-a\n+b", tmp_path)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestHelpers:
    def test_identify_files(self) -> None:
        patch = _patch(
            "*** Update File: a.py",
            "@@",
            "-x",
            "+y",
            "*** Delete File: b.py",
            "*** Add File: c.py",
            "+z",
        )
        assert identify_files_needed(patch) == ["a.py", "b.py"]
        assert identify_files_added(patch) == ["c.py"]
        assert affected_files(patch) == ["a.py", "b.py", "c.py"]

    def test_extract_patch_direct(self) -> None:
        patch = _patch("*** Add File: x", "+1")
        assert extract_patch(["apply_patch", patch]) == patch

    def test_extract_patch_heredoc(self) -> None:
        patch = _patch("*** Add File: x", "+1")
        script = f"apply_patch <<'EOF'\n{patch}\nEOF"
        assert extract_patch(["bash", "-lc", script]) == patch

    def test_extract_patch_ignores_other_commands(self) -> None:
        assert extract_patch(["ls", "-la"]) is None
        assert extract_patch(["bash", "-lc", "echo hi"]) is None
