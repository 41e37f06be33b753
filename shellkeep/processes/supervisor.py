"""WorkerSupervisor — start the worker once, unless it is already running.

``ensure_running`` never raises: anything that goes wrong means "try
again in the next shell session". There is no lock across sessions, so
two shells starting at the same moment can both launch the worker.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Callable, Sequence

from shellkeep.config import WorkerDescriptor
from shellkeep.processes.matcher import find_worker

_logger = logging.getLogger(__name__)

Finder = Callable[[WorkerDescriptor], "int | None"]
Spawner = Callable[[Sequence[str]], None]
Liveness = Callable[[int], bool]


def is_alive(pid: int) -> bool:
    """Signal-0 probe."""
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        # Exists, owned by someone else.
        return True
    except OSError:
        return False
    return True


def spawn_detached(argv: Sequence[str]) -> None:
    """Start ``argv`` in the background and forget about it.

    The child gets a new session (no controlling terminal) where the
    platform supports it, and all standard streams point at /dev/null.
    The Popen handle is dropped on purpose: the worker is never awaited
    or reaped by us.
    """
    subprocess.Popen(
        list(argv),
        stdin=subprocess.DEVNULL,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        close_fds=True,
        start_new_session=hasattr(os, "setsid"),
    )


def resolve_interpreter(python_bin: str) -> str | None:
    if not python_bin:
        return None
    return shutil.which(python_bin)


def payload_ok(descriptor: WorkerDescriptor) -> bool:
    path = descriptor.payload_path
    return (
        bool(str(path))
        and path.is_absolute()
        and path.is_file()
        and os.access(path, os.R_OK)
    )


class WorkerSupervisor:
    """Duplicate-safe launcher for a single worker process."""

    def __init__(
        self,
        finder: Finder = find_worker,
        spawner: Spawner = spawn_detached,
        liveness: Liveness = is_alive,
    ) -> None:
        self._find = finder
        self._spawn = spawner
        self._alive = liveness

    def ensure_running(self, descriptor: WorkerDescriptor) -> bool:
        """Start the worker if it is not running. Returns True if a launch was attempted."""
        try:
            return self._ensure(descriptor)
        except Exception as e:
            _logger.debug("ensure_running failed: %s", e)
            return False

    def _ensure(self, descriptor: WorkerDescriptor) -> bool:
        if not descriptor.enabled:
            _logger.debug("Autostart disabled")
            return False
        interpreter = resolve_interpreter(descriptor.python_bin)
        if interpreter is None:
            _logger.debug("No interpreter for %r", descriptor.python_bin)
            return False
        if not payload_ok(descriptor):
            _logger.debug("Payload %s missing, unreadable or relative", descriptor.payload_path)
            return False

        pid = self._find(descriptor)
        if pid is not None and self._alive(pid):
            _logger.debug("Worker already running as pid %d", pid)
            return False

        try:
            self._spawn([interpreter, str(descriptor.payload_path)])
        except OSError as e:
            _logger.debug("Worker launch failed: %s", e)
            return True
        _logger.info("Started worker %s", descriptor.payload_path)
        return True
