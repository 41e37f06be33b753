"""Marker-delimited blocks inside a text file.

A block looks like::

    # >>> TAG (DO NOT EDIT)
    ...body...
    # <<< TAG

At most one block per tag survives a ``replace_block`` call: every earlier
occurrence is stripped before the fresh one is appended. Writes go to a
scratch file in the same directory and are renamed over the target, so
readers see either the old file or the new one.
"""

from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from shellkeep.exceptions import BlockVerificationError, RcFileNotFoundError

_logger = logging.getLogger(__name__)

BEGIN = "# >>>"
END = "# <<<"


@dataclass(frozen=True)
class MarkerBlock:
    tag: str
    body: str = ""

    @property
    def begin_marker(self) -> str:
        return f"{BEGIN} {self.tag} (DO NOT EDIT)"

    @property
    def end_marker(self) -> str:
        return f"{END} {self.tag}"

    def render(self) -> str:
        body = self.body.rstrip("\n")
        parts = [self.begin_marker]
        if body:
            parts.append(body)
        parts.append(self.end_marker)
        return "\n".join(parts) + "\n"


def _is_marker(line: str, prefix: str, tag: str) -> bool:
    # The tag must be followed by whitespace or end of line, so that
    # FOO does not match FOO_V2.
    head = f"{prefix} {tag}"
    if not line.startswith(head):
        return False
    rest = line[len(head):]
    return rest == "" or rest[0].isspace()


def strip_block(lines: Iterable[str], tag: str) -> list[str]:
    """Drop every begin..end region for ``tag``, markers included.

    A begin marker without a matching end marker swallows the rest of
    the file.
    """
    kept: list[str] = []
    skipping = False
    for line in lines:
        if not skipping and _is_marker(line, BEGIN, tag):
            skipping = True
            continue
        if skipping:
            if _is_marker(line, END, tag):
                skipping = False
            continue
        kept.append(line)
    return kept


def has_block(path: Path, tag: str) -> bool:
    try:
        text = Path(path).read_text(encoding="utf-8", errors="surrogateescape")
    except FileNotFoundError:
        return False
    return any(_is_marker(line, BEGIN, tag) for line in text.splitlines())


def _read_lines(path: Path) -> list[str]:
    if not path.is_file():
        raise RcFileNotFoundError(f"Cannot find {path}")
    with open(path, encoding="utf-8", errors="surrogateescape", newline="") as fh:
        return fh.readlines()


def _atomic_write(path: Path, content: str) -> None:
    """Write ``content`` next to ``path`` and rename it into place."""
    mode = None
    try:
        mode = path.stat().st_mode & 0o7777
    except FileNotFoundError:
        pass

    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="utf-8", errors="surrogateescape", newline="") as fh:
            fh.write(content)
            fh.flush()
            os.fsync(fh.fileno())
        if mode is not None:
            os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
        tmp_name = None
    finally:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)


def replace_block(path: Path, tag: str, body: str) -> None:
    """Strip all ``tag`` blocks from ``path`` and append one fresh block."""
    path = Path(path)
    lines = strip_block(_read_lines(path), tag)
    # Trailing blank lines are the separator we add below; drop them so
    # that re-running produces the same bytes.
    while lines and not lines[-1].strip():
        lines.pop()

    block = MarkerBlock(tag=tag, body=body)
    content = "".join(lines)
    if content:
        if not content.endswith("\n"):
            content += "\n"
        content += "\n"
    content += block.render()

    _atomic_write(path, content)
    _logger.info("Wrote %s block to %s", tag, path)

    if not has_block(path, tag):
        raise BlockVerificationError(f"Write verification failed for {path}")


def remove_block(path: Path, tag: str) -> bool:
    """Remove every ``tag`` block. Returns True if anything was removed.

    When the tag is absent the file is not rewritten at all.
    """
    path = Path(path)
    original = _read_lines(path)
    lines = strip_block(original, tag)
    if len(lines) == len(original):
        _logger.info("No %s block in %s", tag, path)
        return False

    _atomic_write(path, "".join(lines))
    _logger.info("Removed %s block from %s", tag, path)
    return True
