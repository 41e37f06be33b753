"""CommandGuard — refuse file viewers and editors on one protected file.

The guard is a dispatch table from command name to handler. Callers go
through ``CommandGuard.run`` instead of invoking the tool directly; the
handler canonicalizes each path-like argument and refuses the call if
any of them is the protected file.

Only arguments are inspected. A command reading the file from stdin, or
a command that is not in the table, is not covered.
"""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Sequence, TextIO

from shellkeep.exceptions import UnknownCommandError

_logger = logging.getLogger(__name__)

PROTECTED_COMMANDS = (
    "cat", "less", "more", "head", "tail",
    "vi", "vim", "nvim", "nano", "emacs", "ed", "view",
    "lesspipe", "sed", "awk",
    "bat", "batcat", "busybox", "micro", "helix", "hx",
)

DENIAL_MESSAGE = "shellkeep: {path} is protected; refusing to run {command} on it."
DENIED_STATUS = 1

Runner = Callable[[Sequence[str], "str | None"], int]


def run_real(argv: Sequence[str], cwd: str | None = None) -> int:
    """Run the real command in the foreground and return its status."""
    try:
        return subprocess.run(list(argv), cwd=cwd, check=False).returncode
    except FileNotFoundError:
        print(f"{argv[0]}: command not found", file=sys.stderr)
        return 127


def canonicalize(arg: str, cwd: str | None = None) -> str:
    """Absolute, symlink-free form of ``arg`` relative to ``cwd``.

    Falls back to a plain cwd-joined path when resolution fails.
    """
    base = cwd or os.getcwd()
    joined = os.path.join(base, os.path.expanduser(arg))
    try:
        return os.path.realpath(joined)
    except (OSError, ValueError):
        return os.path.normpath(os.path.abspath(joined))


def path_candidates(args: Sequence[str]) -> list[str]:
    """Arguments that could name a file. ``--opt=value`` contributes value."""
    candidates = []
    for arg in args:
        if not arg:
            continue
        if arg.startswith("--") and "=" in arg:
            _, _, value = arg.partition("=")
            if value:
                candidates.append(value)
            continue
        candidates.append(arg)
    return candidates


@dataclass(frozen=True)
class ProtectedPath:
    path: Path
    canonical: str = field(init=False)
    basename: str = field(init=False)

    def __post_init__(self) -> None:
        canonical = canonicalize(str(self.path), "/")
        object.__setattr__(self, "canonical", canonical)
        object.__setattr__(self, "basename", os.path.basename(str(self.path)))

    def matches(self, arg: str, cwd: str | None = None) -> bool:
        resolved = canonicalize(arg, cwd)
        if resolved == self.canonical:
            return True
        # Base-name fallback catches copies of the path under a different
        # prefix (bind mounts, chroots, a second prefix).
        return bool(self.basename) and os.path.basename(resolved) == self.basename


@dataclass(frozen=True)
class _Entry:
    real: str
    fixed_args: tuple[str, ...] = ()


class CommandGuard:
    """Dispatch table of guarded commands."""

    def __init__(
        self,
        protected: ProtectedPath,
        runner: Runner = run_real,
        commands: Sequence[str] = PROTECTED_COMMANDS,
        stderr: TextIO | None = None,
    ) -> None:
        self.protected = protected
        self._runner = runner
        self._stderr = stderr
        self._table: dict[str, _Entry] = {}
        for name in commands:
            self.register(name)

    def register(self, name: str, real: str | None = None, *fixed_args: str) -> None:
        """Add ``name`` to the table, optionally as an alias for ``real``.

        ``fixed_args`` are passed ahead of the caller's arguments and are
        never checked against the protected path.
        """
        self._table[name] = _Entry(real=real or name, fixed_args=tuple(fixed_args))

    def commands(self) -> list[str]:
        return sorted(self._table)

    def __contains__(self, name: str) -> bool:
        return name in self._table

    def is_protected(self, args: Sequence[str], cwd: str | None = None) -> bool:
        return any(self.protected.matches(a, cwd) for a in path_candidates(args))

    def run(self, name: str, args: Sequence[str], cwd: str | None = None) -> int:
        entry = self._table.get(name)
        if entry is None:
            raise UnknownCommandError(f"'{name}' is not a guarded command")

        if self.is_protected(args, cwd):
            _logger.info("Denied %s on protected path", name)
            print(
                DENIAL_MESSAGE.format(path=self.protected.path, command=name),
                file=self._stderr or sys.stderr,
            )
            return DENIED_STATUS

        return self._runner([entry.real, *entry.fixed_args, *args], cwd)
