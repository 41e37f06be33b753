"""Find the worker in the live process table.

Matching is plain substring containment over each process's command
line, in two passes:

1. the full payload path;
2. ``"python"`` together with the payload's base file name, for workers
   started with a relative path or re-exec'd with reordered arguments.

The second pass can match an unrelated process that happens to share
both strings. That is only ever used to suppress a launch, never to
signal a process, so the imprecision is accepted.
"""

from __future__ import annotations

import logging
import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from shellkeep.config import WorkerDescriptor

_logger = logging.getLogger(__name__)

PROC_ROOT = Path("/proc")
INTERPRETER_HINT = "python"


@dataclass(frozen=True)
class ProcessRecord:
    pid: int
    command_line: str


def _from_proc(uid: int, proc_root: Path = PROC_ROOT) -> list[ProcessRecord]:
    records = []
    for entry in proc_root.iterdir():
        if not entry.name.isdigit():
            continue
        try:
            if entry.stat().st_uid != uid:
                continue
            raw = (entry / "cmdline").read_bytes()
        except OSError:
            # Exited between listing and reading, or not ours to read.
            continue
        if not raw:
            continue  # kernel thread or zombie
        args = raw.rstrip(b"\0").split(b"\0")
        command_line = " ".join(a.decode("utf-8", errors="replace") for a in args)
        records.append(ProcessRecord(pid=int(entry.name), command_line=command_line))
    return records


def _from_ps(uid: int) -> list[ProcessRecord]:
    out = subprocess.run(
        ["ps", "-o", "pid=", "-o", "args=", "-u", str(uid)],
        capture_output=True,
        text=True,
        check=False,
    ).stdout
    return parse_ps_output(out)


def parse_ps_output(text: str) -> list[ProcessRecord]:
    """Parse ``ps -o pid= -o args=`` output into records."""
    records = []
    for line in text.splitlines():
        line = line.strip()
        if not line:
            continue
        pid_str, _, args = line.partition(" ")
        if not pid_str.isdigit():
            continue
        records.append(ProcessRecord(pid=int(pid_str), command_line=args.strip()))
    return records


def list_processes(uid: int | None = None) -> list[ProcessRecord]:
    """Fresh snapshot of the processes owned by ``uid`` (default: us)."""
    if uid is None:
        uid = os.getuid()
    if PROC_ROOT.is_dir():
        try:
            return _from_proc(uid)
        except OSError as e:
            _logger.debug("Reading %s failed, falling back to ps: %s", PROC_ROOT, e)
    try:
        return _from_ps(uid)
    except OSError as e:
        _logger.debug("ps unavailable: %s", e)
        return []


def find_worker(
    descriptor: WorkerDescriptor,
    processes: Iterable[ProcessRecord] | None = None,
) -> int | None:
    """Return the pid of a process that looks like the worker, or None."""
    snapshot = list(processes) if processes is not None else list_processes()
    payload = str(descriptor.payload_path)
    if not payload:
        return None

    for record in snapshot:
        if payload in record.command_line:
            return record.pid

    base = os.path.basename(payload)
    if not base:
        return None
    for record in snapshot:
        if INTERPRETER_HINT in record.command_line and base in record.command_line:
            return record.pid
    return None
