from __future__ import annotations

import os
from dataclasses import dataclass

from chatstore.utils.env import load_env_file
from chatstore.utils.logging import get_logger

log = get_logger(__name__)

_ENV_PREFIX = "CHATSTORE_"


def _read_int_env(name: str, default: int) -> int:
    raw = (os.getenv(name, str(default)) or str(default)).strip()
    try:
        value = int(raw)
    except ValueError:
        log.warning("config_invalid_int_env", name=name, value=raw)
        return default
    return max(1, value)


def _read_float_env(name: str, default: float) -> float:
    raw = (os.getenv(name, str(default)) or str(default)).strip()
    try:
        value = float(raw)
    except ValueError:
        log.warning("config_invalid_float_env", name=name, value=raw)
        return default
    return max(0.0, value)


def _read_bool_env(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class StoreSettings:
    """Tunables for the conversation store.

    The base directory is not part of this object; callers
    pass it to the store constructor.
    """

    index_debounce_seconds: float = 0.5
    save_max_attempts: int = 3
    save_backoff_seconds: float = 1.0
    save_backoff_max_seconds: float = 4.0
    pretty_print: bool = True

    @classmethod
    def from_env(cls) -> "StoreSettings":
        load_env_file()
        defaults = cls()
        return cls(
            index_debounce_seconds=_read_float_env(
                f"{_ENV_PREFIX}INDEX_DEBOUNCE_SECONDS", defaults.index_debounce_seconds
            ),
            save_max_attempts=_read_int_env(f"{_ENV_PREFIX}SAVE_MAX_ATTEMPTS", defaults.save_max_attempts),
            save_backoff_seconds=_read_float_env(
                f"{_ENV_PREFIX}SAVE_BACKOFF_SECONDS", defaults.save_backoff_seconds
            ),
            save_backoff_max_seconds=_read_float_env(
                f"{_ENV_PREFIX}SAVE_BACKOFF_MAX_SECONDS", defaults.save_backoff_max_seconds
            ),
            pretty_print=_read_bool_env(f"{_ENV_PREFIX}PRETTY_PRINT", defaults.pretty_print),
        )
