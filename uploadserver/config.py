import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

DEFAULT_PORT = 8000
DEFAULT_HOST = "0.0.0.0"
DEFAULT_UPLOAD_RATE_LIMIT = "60 per minute"
BYTES_PER_MB = 1024 * 1024

_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"0", "false", "no", "off"}

logger = logging.getLogger("uploadserver.config")


@dataclass(frozen=True)
class ServerConfig:
    """Everything the server needs, fixed for the process lifetime."""

    root: Path
    port: int = DEFAULT_PORT
    host: str = DEFAULT_HOST
    keep_original_name: bool = False
    dev_mode: bool = False
    watch_memory: bool = False
    max_upload_bytes: Optional[int] = None
    upload_rate_limit: str = DEFAULT_UPLOAD_RATE_LIMIT
    log_file: Optional[Path] = None

    def __post_init__(self) -> None:
        root = Path(self.root).expanduser().resolve()
        if not root.is_dir():
            raise ValueError(f"Serving root is not an existing directory: {root}")
        object.__setattr__(self, "root", root)
        if not 0 < int(self.port) < 65536:
            raise ValueError(f"Port out of range: {self.port}")


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in _TRUE_VALUES:
        return True
    if normalized in _FALSE_VALUES:
        return False
    logger.warning("Invalid boolean for %s: %s. Ignoring.", env_key, raw_value)
    return None


def _safe_int_env(key: str, default: int, min_value: int = 1) -> int:
    """Safely parse integer environment variable with error handling."""
    raw_value = os.environ.get(key)
    if raw_value is None or raw_value == "":
        return default
    try:
        return max(min_value, int(raw_value))
    except (TypeError, ValueError):
        logger.warning(
            "Invalid value for %s: %s. Using default: %d",
            key, raw_value, default
        )
        return default


def _get_optional_float_env(env_key: str) -> Optional[float]:
    raw_value = os.environ.get(env_key)
    if raw_value is None or raw_value == "":
        return None
    try:
        value = float(raw_value)
    except ValueError:
        logger.warning("Invalid value for %s: %s. Ignoring.", env_key, raw_value)
        return None
    return value if value > 0 else None


def _resolve_env_path(env_key: str) -> Optional[Path]:
    value = os.environ.get(env_key)
    if value:
        return Path(value).expanduser()
    return None


def load_config(**overrides: Any) -> ServerConfig:
    """Build a ``ServerConfig`` from ``UPLOADSERVER_*`` variables.

    Keyword arguments whose value is not ``None`` take precedence over the
    environment; the CLI passes its parsed flags this way.
    """

    max_upload_mb = _get_optional_float_env("UPLOADSERVER_MAX_UPLOAD_MB")
    values = {
        "root": _resolve_env_path("UPLOADSERVER_ROOT") or Path.cwd(),
        "port": _safe_int_env("UPLOADSERVER_PORT", DEFAULT_PORT),
        "host": os.environ.get("UPLOADSERVER_HOST") or DEFAULT_HOST,
        "keep_original_name": bool(_get_optional_bool_env("UPLOADSERVER_KEEP_UPLOAD_FILENAME")),
        "dev_mode": bool(_get_optional_bool_env("UPLOADSERVER_DEV")),
        "watch_memory": bool(_get_optional_bool_env("UPLOADSERVER_WATCH_MEM")),
        "max_upload_bytes": int(max_upload_mb * BYTES_PER_MB) if max_upload_mb else None,
        "upload_rate_limit": os.environ.get("UPLOADSERVER_UPLOAD_RATE_LIMIT") or DEFAULT_UPLOAD_RATE_LIMIT,
        "log_file": _resolve_env_path("UPLOADSERVER_LOG_FILE"),
    }
    for key, value in overrides.items():
        if key not in values:
            raise TypeError(f"Unknown configuration option: {key}")
        if value is not None:
            values[key] = value
    return ServerConfig(**values)
