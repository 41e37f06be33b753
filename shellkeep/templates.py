"""Shell text for the block injected into bash.bashrc."""

from __future__ import annotations

import shlex
import sys

from shellkeep.config import KeepSettings

HOOK = "__shellkeep_pc_hook"

_BODY = """\
# Keep the shellkeep worker running in new interactive shells.
# Managed by `shellkeep`; remove with `shellkeep --uninstall`.
export SHELLKEEP_PAYLOAD_PATH="${{SHELLKEEP_PAYLOAD_PATH:-{payload}}}"
export SHELLKEEP_PYTHON_BIN="${{SHELLKEEP_PYTHON_BIN:-{python}}}"
export SHELLKEEP_AUTOSTART="${{SHELLKEEP_AUTOSTART:-{autostart}}}"

# `shellkeep ensure` reads SHELLKEEP_AUTOSTART itself (1/0, true/false, yes/no, on/off).
__shellkeep_ensure(){{
  {runner} ensure >/dev/null 2>&1 </dev/null || true
}}

if [[ "$-" == *i* ]]; then
  __shellkeep_ensure

  {hook}(){{
    __shellkeep_ensure
    PROMPT_COMMAND="${{PROMPT_COMMAND/{hook}; /}}"
    PROMPT_COMMAND="${{PROMPT_COMMAND/{hook}/}}"
    unset -f {hook}
  }}
  case "$PROMPT_COMMAND" in
    *"{hook}"*) : ;;
    "") PROMPT_COMMAND="{hook}" ;;
    *)  PROMPT_COMMAND="{hook}; $PROMPT_COMMAND" ;;
  esac
fi
"""


def runner_command(python: str | None = None) -> str:
    """How the block calls back into shellkeep."""
    return f"{shlex.quote(python or sys.executable)} -m shellkeep"


def render_block_body(settings: KeepSettings, python: str | None = None) -> str:
    """Block body: exported config, a load-time trigger and a one-shot prompt hook."""
    return _BODY.format(
        payload=settings.payload_path,
        python=settings.python_bin,
        autostart="1" if settings.autostart else "0",
        runner=runner_command(python),
        hook=HOOK,
    )
