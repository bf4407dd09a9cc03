"""Platform sandbox selection and command wrapping.

full-auto runs commands sandboxed:
- macOS: ``sandbox-exec`` with a seatbelt profile (read anywhere, write only
  to the writable roots, no network).
- Linux: a container wrapper script that runs the command in an isolated
  image.
- Windows: no sandbox exists; the command runs unwrapped with a warning.
Anything else fails closed with ``SandboxUnavailableError``.
"""

from __future__ import annotations

import logging
import os
import shlex
import sys
from enum import Enum
from importlib.resources import files
from typing import Sequence

from agent_runtime.errors import SandboxUnavailableError

logger = logging.getLogger(__name__)

SEATBELT_EXECUTABLE = "/usr/bin/sandbox-exec"

DEFAULT_CONTAINER_WRAPPER = str(files("agent_runtime") / "scripts" / "run_in_container.sh")

SEATBELT_BASE_POLICY = """(version 1)

; start with closed-by-default
(deny default)

; allow read-only file operations
(allow file-read*)

; child processes inherit the policy of their parent
(allow process-exec)
(allow process-fork)
(allow signal (target self))

(allow file-write-data
  (require-all
    (path "/dev/null")
    (vnode-type CHARACTER-DEVICE)))

; sysctls permitted
(allow sysctl-read)

(allow ipc-posix-sem)
(allow mach-lookup (global-name "com.apple.sysmond"))
(allow pseudo-tty)
(allow file-read* file-write* file-ioctl (literal "/dev/ptmx"))
"""


class SandboxType(str, Enum):
    NONE = "none"
    MACOS_SEATBELT = "macos.seatbelt"
    LINUX_CONTAINER = "linux.container"


def _is_linux(platform: str) -> bool:
    return platform.startswith("linux")


def select_sandbox(run_in_sandbox: bool, platform: str | None = None) -> SandboxType:
    """Pick the sandbox for this host. Raises when one is mandated but missing."""
    if not run_in_sandbox:
        return SandboxType.NONE
    platform = platform or sys.platform
    if platform == "darwin":
        return SandboxType.MACOS_SEATBELT
    if _is_linux(platform):
        return SandboxType.LINUX_CONTAINER
    if platform == "win32":
        logger.warning("Sandbox was requested but is not available on Windows. Continuing without sandbox.")
        return SandboxType.NONE
    raise SandboxUnavailableError("Sandbox was mandated, but no sandbox is available!")


def seatbelt_command(cmd: Sequence[str], writable_roots: Sequence[str]) -> list[str]:
    """Prefix ``cmd`` with sandbox-exec and a profile scoped to ``writable_roots``."""
    params: list[str] = []
    policy = SEATBELT_BASE_POLICY
    if writable_roots:
        subpaths: list[str] = []
        for i, root in enumerate(writable_roots):
            param = f"WRITABLE_ROOT_{i}"
            params.extend(["-D", f"{param}={os.path.realpath(root)}"])
            subpaths.append(f'(subpath (param "{param}"))')
        policy += f"\n(allow file-write*\n  {' '.join(subpaths)}\n)\n"
    return [SEATBELT_EXECUTABLE, "-p", policy, *params, "--", *cmd]


def container_command(cmd: Sequence[str], workdir: str, wrapper: str | None = None) -> list[str]:
    """Prefix ``cmd`` with the container wrapper script.

    Raises ``SandboxUnavailableError`` when the script is missing.
    """
    script = wrapper or DEFAULT_CONTAINER_WRAPPER
    if not os.path.isfile(script):
        raise SandboxUnavailableError(f"Container sandbox wrapper not found: {script}")
    joined = cmd[0] if len(cmd) == 1 else shlex.join(cmd)
    return [script, "--work_dir", workdir, joined]


def wrap_command(
    cmd: Sequence[str],
    sandbox: SandboxType,
    *,
    workdir: str,
    writable_roots: Sequence[str],
    container_wrapper: str | None = None,
) -> list[str]:
    if sandbox is SandboxType.MACOS_SEATBELT:
        return seatbelt_command(cmd, writable_roots)
    if sandbox is SandboxType.LINUX_CONTAINER:
        return container_command(cmd, workdir, container_wrapper)
    return list(cmd)


# ---------------------------------------------------------------------------
# Windows command adaptation
# ---------------------------------------------------------------------------

COMMAND_MAP: dict[str, str] = {
    "ls": "dir",
    "grep": "findstr",
    "cat": "type",
    "rm": "del",
    "cp": "copy",
    "mv": "move",
    "touch": "echo.>",
    "mkdir": "md",
}

OPTION_MAP: dict[str, dict[str, str]] = {
    "ls": {"-l": "/p", "-a": "/a", "-R": "/s"},
    "grep": {"-i": "/i", "-r": "/s"},
}

_WINDOWS_SHELL_BUILTINS = frozenset({"dir", "type", "del", "copy", "move", "md", "rd", "cd", "cls"})


def adapt_command_for_platform(
    command: Sequence[str],
    platform: str | None = None,
) -> tuple[list[str], bool]:
    """Translate common Unix commands on Windows.

    Returns ``(adapted_command, needs_shell)``; other platforms get the
    command back unchanged.
    """
    platform = platform or sys.platform
    adapted = list(command)
    if platform != "win32" or not adapted:
        return adapted, False

    original = adapted[0]
    if original not in COMMAND_MAP:
        return adapted, False

    adapted[0] = COMMAND_MAP[original]
    needs_shell = False
    if original == "touch":
        needs_shell = True
        if len(adapted) > 1:
            adapted = [f"echo.>{' '.join(adapted[1:])}"]
    elif adapted[0] in _WINDOWS_SHELL_BUILTINS:
        needs_shell = True

    options = OPTION_MAP.get(original)
    if options:
        adapted = [adapted[0]] + [options.get(arg, arg) for arg in adapted[1:]]

    logger.debug("Adapted command for Windows: %s (needs_shell=%s)", adapted, needs_shell)
    return adapted, needs_shell


def requires_shell(cmd: Sequence[str]) -> bool:
    """A single-string command containing shell operators must run via the shell."""
    if len(cmd) != 1:
        return False
    lexer = shlex.shlex(cmd[0], posix=True, punctuation_chars=True)
    lexer.whitespace_split = True
    try:
        tokens = list(lexer)
    except ValueError:
        return True
    return any(tok and all(ch in "();<>|&" for ch in tok) for tok in tokens)
