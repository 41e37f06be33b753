"""Install and uninstall: download, patch bash.bashrc, kick the worker."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

from shellkeep import rcblock
from shellkeep.config import KeepSettings
from shellkeep.exceptions import InvalidPayloadPathError, RcFileNotFoundError
from shellkeep.installer import InstallOutcome, PayloadInstaller, install_from_url
from shellkeep.processes.supervisor import WorkerSupervisor
from shellkeep.templates import render_block_body

_logger = logging.getLogger(__name__)


@dataclass
class InstallReport:
    rc_path: Path
    payload: InstallOutcome | None = None
    worker_started: bool = False


def require_rc_path(settings: KeepSettings) -> Path:
    rc_path = settings.resolve_rc_path()
    if rc_path is None:
        tried = " and ".join(str(p) for p in settings.rc_candidates())
        raise RcFileNotFoundError(f"Cannot find bash.bashrc (tried: {tried}).")
    return rc_path


async def install(
    settings: KeepSettings,
    installer: PayloadInstaller | None = None,
    supervisor: WorkerSupervisor | None = None,
) -> InstallReport:
    """Full install. Raises KeepError subclasses on fatal conditions."""
    if not settings.payload_path.is_absolute():
        raise InvalidPayloadPathError(
            f"SHELLKEEP_PAYLOAD_PATH must be absolute, got {settings.payload_path}"
        )
    rc_path = require_rc_path(settings)
    report = InstallReport(rc_path=rc_path)

    if settings.download_url:
        report.payload = await install_from_url(settings, installer=installer)

    rcblock.replace_block(rc_path, settings.tag, render_block_body(settings))

    supervisor = supervisor or WorkerSupervisor()
    report.worker_started = supervisor.ensure_running(settings.worker())
    return report


def uninstall(settings: KeepSettings) -> bool:
    """Remove the tagged block. Leaves worker and payload alone."""
    rc_path = require_rc_path(settings)
    return rcblock.remove_block(rc_path, settings.tag)


def ensure(settings: KeepSettings, supervisor: WorkerSupervisor | None = None) -> bool:
    """One supervisor pass; the hook the injected block calls."""
    supervisor = supervisor or WorkerSupervisor()
    return supervisor.ensure_running(settings.worker())
