"""config.py — Global constants, Rich console, and verbosity mode."""

import os
import re
import sys

from rich import (
    box as rbox,  # noqa: F401  re-exported; imported via `from steprunner.config import rbox`
)
from rich.console import Console

# ── Windows UTF-8 console ──────────────────────────────────────────────────────
# Reconfigure Python's own stdout/stderr to UTF-8 so container output that
# bypasses Rich still prints.
if sys.platform == "win32":
    if not os.environ.get("PYTHONIOENCODING"):
        os.environ["PYTHONIOENCODING"] = "utf-8"
    if hasattr(sys.stdout, "reconfigure"):
        try:
            sys.stdout.reconfigure(encoding="utf-8", errors="replace")  # type: ignore[union-attr]
            sys.stderr.reconfigure(encoding="utf-8", errors="replace")  # type: ignore[union-attr]
        except Exception:
            pass

# Step output is arbitrary text from the container; never interpret it as markup.
_console = Console(legacy_windows=False, highlight=False)

# ── Config file ────────────────────────────────────────────────────────────────

# Candidate names searched (in order) in every search directory.
CONFIG_FILENAMES: tuple[str, ...] = ("stepline.yml", ".stepline.yml")

# ── Defaults ───────────────────────────────────────────────────────────────────

# Docker API endpoint.  Same env var the docker CLI reads.
DEFAULT_DOCKER_HOST: str = os.environ.get("DOCKER_HOST", "unix:///var/run/docker.sock")

# Where run artefacts (failure reports) are written on the host.
DEFAULT_WORKING_DIR: str = os.environ.get("STEPLINE_WORKING_DIR", "./.stepline")

# Directory inside the container where the pipeline works.
DEFAULT_GUEST_ROOT: str = "/pipeline"

DEFAULT_IGNORE_FILE: str = ".steplineignore"

# Timeouts are expressed in minutes, like the `stepline.yml` keys.
DEFAULT_COMMAND_TIMEOUT: float = 25
DEFAULT_NO_RESPONSE_TIMEOUT: float = 5

# Prefix for the environment variables a step's parameters are exported as.
STEP_ENV_PREFIX: str = "STEP"

# ── Utilities ──────────────────────────────────────────────────────────────────


def slugify(text: str) -> str:
    """Convert a step or pipeline name to a lowercase, filesystem-safe slug."""
    return re.sub(r"[^a-z0-9]+", "-", text.lower().strip()).strip("-")


# ── Verbosity mode ─────────────────────────────────────────────────────────────

# Default is compact: step output is captured silently; failures are shown inline.
# Set to True to stream every line sent to and received from the container.
_verbose: bool = False


def set_verbose(v: bool) -> None:
    """Switch the global log verbosity mode.  True = stream; False = compact (default)."""
    global _verbose
    _verbose = v


def is_verbose() -> bool:
    """Return True when verbose (full-stream) mode is active."""
    return _verbose


# Number of output tail lines shown inline when a step fails in compact mode.
_LOG_TAIL_LINES: int = 40
