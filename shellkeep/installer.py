"""PayloadInstaller — download the worker script and put it in place.

One attempt is Fetch -> Validate -> Deduplicate -> Commit. Any failure
short of "no transport at all" discards the scratch file, sleeps for a
fixed delay and starts over. There is no retry cap; callers that need a
deadline wrap the call in ``asyncio.wait_for``.
"""

from __future__ import annotations

import asyncio
import errno
import hashlib
import logging
import os
import shutil
import tempfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Awaitable, Callable, Protocol

import httpx

from shellkeep.config import KeepSettings
from shellkeep.exceptions import NoTransportError, PayloadValidationError, TransportError

_logger = logging.getLogger(__name__)

SHM_DIR = Path("/dev/shm")
INSTALLED_MODE = 0o700

Validator = Callable[[Path], Awaitable[None]]


class InstallOutcome(str, Enum):
    INSTALLED = "installed"
    UNCHANGED = "unchanged"


@dataclass
class DownloadJob:
    source_url: str
    destination: Path
    existing_checksum: str | None = None
    candidate_checksum: str | None = None

    @property
    def unchanged(self) -> bool:
        return (
            self.existing_checksum is not None
            and self.existing_checksum == self.candidate_checksum
        )


# ── Transports ──────────────────────────────────────────────────


class Transport(Protocol):
    name: str

    async def fetch(self, url: str, target: Path) -> None:
        """Write the body of ``url`` into ``target`` or raise TransportError."""


class HttpxTransport:
    name = "httpx"

    def __init__(self, connect_timeout: float = 20.0, max_time: float = 300.0) -> None:
        self._timeout = httpx.Timeout(max_time, connect=connect_timeout)

    async def fetch(self, url: str, target: Path) -> None:
        try:
            async with httpx.AsyncClient(timeout=self._timeout, follow_redirects=True) as client:
                async with client.stream("GET", url) as resp:
                    resp.raise_for_status()
                    with open(target, "wb") as fh:
                        async for chunk in resp.aiter_bytes():
                            fh.write(chunk)
        except httpx.HTTPError as e:
            raise TransportError(f"{type(e).__name__}: {e}") from e


class _ToolTransport:
    """Shared runner for command-line downloaders."""

    name = ""

    def __init__(self, executable: str, connect_timeout: float = 20.0, max_time: float = 300.0) -> None:
        self._exe = executable
        self._connect_timeout = connect_timeout
        self._max_time = max_time

    def command(self, url: str, target: Path) -> list[str]:
        raise NotImplementedError

    async def fetch(self, url: str, target: Path) -> None:
        proc = await asyncio.create_subprocess_exec(
            *self.command(url, target),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        _, stderr = await proc.communicate()
        if proc.returncode != 0:
            detail = stderr.decode("utf-8", errors="replace").strip()[:300]
            raise TransportError(f"{self.name} exited {proc.returncode}: {detail}")


class CurlTransport(_ToolTransport):
    name = "curl"

    def command(self, url: str, target: Path) -> list[str]:
        return [
            self._exe, "--fail", "--location", "--silent", "--show-error",
            "--connect-timeout", str(int(self._connect_timeout)),
            "--max-time", str(int(self._max_time)),
            "--output", str(target),
            url,
        ]


class WgetTransport(_ToolTransport):
    name = "wget"

    def command(self, url: str, target: Path) -> list[str]:
        return [
            self._exe, "--quiet", "--tries=3",
            f"--timeout={int(self._connect_timeout)}",
            f"--output-document={target}",
            url,
        ]


def select_transport(settings: KeepSettings) -> Transport:
    """Pick the download mechanism, or raise NoTransportError."""
    kwargs = {"connect_timeout": settings.connect_timeout, "max_time": settings.max_time}
    choice = settings.transport
    if choice in ("auto", "httpx"):
        return HttpxTransport(**kwargs)

    tools = {"curl": CurlTransport, "wget": WgetTransport}
    exe = shutil.which(choice)
    if exe is None:
        raise NoTransportError(f"{choice} is not available for download")
    return tools[choice](exe, **kwargs)


# ── Helpers ─────────────────────────────────────────────────────


def scratch_dir() -> Path:
    """Memory-backed /dev/shm when usable, else the system temp dir."""
    if SHM_DIR.is_dir() and os.access(SHM_DIR, os.W_OK | os.X_OK):
        return SHM_DIR
    return Path(tempfile.gettempdir())


def sha256_of(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as fh:
        for chunk in iter(lambda: fh.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


# Compiles in memory; unlike ``-m py_compile`` nothing lands in __pycache__.
_COMPILE_SNIPPET = "import sys; compile(open(sys.argv[1], 'rb').read(), sys.argv[1], 'exec')"


def make_py_compile_check(python_bin: str) -> Validator | None:
    """Syntax check using the worker's own interpreter, if one resolves."""
    interpreter = shutil.which(python_bin) if python_bin else None
    if interpreter is None:
        return None

    async def _check(path: Path) -> None:
        proc = await asyncio.create_subprocess_exec(
            interpreter, "-c", _COMPILE_SNIPPET, str(path),
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.DEVNULL,
        )
        if await proc.wait() != 0:
            raise PayloadValidationError(f"{path.name} does not compile")

    return _check


def commit(scratch: Path, destination: Path) -> None:
    """Move ``scratch`` onto ``destination``.

    A rename is atomic only within one filesystem. Across filesystems we
    copy then delete, which readers can observe half-written.
    """
    try:
        os.replace(scratch, destination)
    except OSError as e:
        if e.errno != errno.EXDEV:
            raise
        _logger.debug("Cross-device move, copying %s to %s", scratch, destination)
        shutil.copyfile(scratch, destination)
        os.unlink(scratch)
    os.chmod(destination, INSTALLED_MODE)


# ── Installer ───────────────────────────────────────────────────


class PayloadInstaller:
    """Retry-until-success download into an atomically replaced file."""

    def __init__(
        self,
        transport: Transport,
        validator: Validator | None = None,
        retry_delay: float = 5.0,
        scratch_root: Path | None = None,
    ) -> None:
        self._transport = transport
        self._validator = validator
        self._retry_delay = retry_delay
        self._scratch_root = scratch_root
        self.attempts = 0

    @classmethod
    def from_settings(cls, settings: KeepSettings) -> PayloadInstaller:
        return cls(
            transport=select_transport(settings),
            validator=make_py_compile_check(settings.python_bin),
            retry_delay=settings.retry_delay,
        )

    async def install(self, url: str, destination: Path) -> InstallOutcome:
        destination = Path(destination)
        destination.parent.mkdir(parents=True, exist_ok=True)

        while True:
            job = DownloadJob(source_url=url, destination=destination)
            if destination.is_file():
                job.existing_checksum = await asyncio.to_thread(sha256_of, destination)
            try:
                return await self._attempt(job)
            except (TransportError, PayloadValidationError, OSError) as e:
                _logger.info("Install attempt %d failed: %s", self.attempts, e)
            await asyncio.sleep(self._retry_delay)

    async def _attempt(self, job: DownloadJob) -> InstallOutcome:
        root = self._scratch_root or scratch_dir()
        fd, name = tempfile.mkstemp(prefix="shellkeep.", dir=root)
        os.close(fd)
        scratch: Path | None = Path(name)
        try:
            self.attempts += 1
            await self._transport.fetch(job.source_url, scratch)

            if scratch.stat().st_size == 0:
                raise PayloadValidationError("downloaded file is empty")
            if self._validator is not None:
                await self._validator(scratch)

            job.candidate_checksum = await asyncio.to_thread(sha256_of, scratch)
            if job.unchanged:
                _logger.info("%s is already up to date", job.destination)
                return InstallOutcome.UNCHANGED

            commit(scratch, job.destination)
            scratch = None  # owned by the destination now
            _logger.info("Installed %s", job.destination)
            return InstallOutcome.INSTALLED
        finally:
            if scratch is not None:
                scratch.unlink(missing_ok=True)


async def install_from_url(
    settings: KeepSettings,
    url: str | None = None,
    installer: PayloadInstaller | None = None,
) -> InstallOutcome:
    """Download ``url`` (default: the configured one) to the payload path."""
    installer = installer or PayloadInstaller.from_settings(settings)
    return await installer.install(url or settings.download_url, settings.payload_path)
