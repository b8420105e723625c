from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path

from dotenv import load_dotenv


REPO_ROOT = Path(__file__).resolve().parents[2]
DEFAULT_ENV_PATH = REPO_ROOT / ".env"
ENV_FILE_VARIABLE = "CHATSTORE_ENV_FILE"


def resolve_env_path(dotenv_path: str | Path | None = None) -> Path | None:
    """Pick the dotenv file holding store overrides.

    An explicit path wins, then ``CHATSTORE_ENV_FILE``, then ``.env`` at the
    repository root. Missing files resolve to None.
    """

    if dotenv_path is not None:
        candidate = Path(dotenv_path)
    elif os.getenv(ENV_FILE_VARIABLE):
        candidate = Path(os.environ[ENV_FILE_VARIABLE]).expanduser()
    else:
        candidate = DEFAULT_ENV_PATH
    return candidate if candidate.is_file() else None


@lru_cache(maxsize=8)
def _load_once(path: Path) -> bool:
    return load_dotenv(dotenv_path=path, override=False)


def load_env_file(dotenv_path: str | Path | None = None) -> bool:
    """Load CHATSTORE_* overrides, each file at most once; variables already set are kept."""

    path = resolve_env_path(dotenv_path)
    if path is None:
        return False
    return _load_once(path.resolve())
