"""Env file location and fixed constants for the sync agent."""
from __future__ import annotations

import os
from pathlib import Path


def _find_project_root() -> Path:
    here = Path(__file__).resolve().parent
    return next(
        (p for p in (here, *here.parents) if (p / "pyproject.toml").is_file()),
        Path.cwd(),
    )


PROJECT_ROOT = _find_project_root()


def _resolve_env_file() -> Path:
    """``PROXY_SYNC_ENV_FILE`` when set, else ``.env`` at the project root.

    Relative names are taken from the project root.  A missing file is fine;
    pydantic-settings skips it.
    """
    raw = os.getenv("PROXY_SYNC_ENV_FILE", "").strip() or ".env"
    path = Path(raw).expanduser()
    return path if path.is_absolute() else PROJECT_ROOT / path


ENV_FILE = _resolve_env_file()


# ---------------------------------------------------------------------------
# Remote authority layout
# ---------------------------------------------------------------------------

DEFAULT_CLUSTER = "default"
DEFAULT_NAMESPACE = "application"
CONFIG_COMMENT = "nginx.conf"
RELEASE_SUFFIX = "-release"

AUTH_HEADER = "Authorization"
CONTENT_TYPE_HEADER = "Content-Type"
CONTENT_TYPE_JSON = "application/json;charset=UTF-8"

# ---------------------------------------------------------------------------
# Local layout and timing
# ---------------------------------------------------------------------------

DEFAULT_CONFIG_PATH = "config.json"
DEFAULT_LOG_FILE = "agent.log"
BACKUP_SUFFIX = ".bak"

RECONCILE_INTERVAL_S = 60.0
HTTP_TIMEOUT_S = 60.0
