"""CLI runtime helpers: settings and logging."""

from __future__ import annotations

import logging

from shellkeep.config import KeepSettings, load_settings


def init_cli() -> KeepSettings:
    """Read settings once and configure logging from them."""
    settings = load_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.WARNING),
        format="%(levelname)s %(name)s: %(message)s",
    )
    return settings

