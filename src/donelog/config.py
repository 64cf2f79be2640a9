"""Settings read from the environment.

Every setting has a ``DONELOG_`` environment variable. The CLI loads a
``.env`` file from the working directory first, so values there apply too,
but variables already set in the environment take precedence.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

from .errors import ConfigError

DEFAULT_SCOPES = ["User.Read", "Tasks.Read", "offline_access", "openid", "profile"]


@dataclass(frozen=True)
class Settings:
    client_id: str | None = None
    tenant: str = "common"
    redirect_uri: str = "http://localhost:8400"
    data_dir: Path = Path("./donelog_data")
    concurrency: int = 3
    max_attempts: int = 3
    backoff: float = 0.5
    timeout: float = 30.0
    log_level: str = "INFO"

    @property
    def token_path(self) -> Path:
        return self.data_dir / "token.json"

    @property
    def authority(self) -> str:
        return f"https://login.microsoftonline.com/{self.tenant}"


def _positive_int(environ: Mapping[str, str], key: str, default: int) -> int:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from exc
    if value < 1:
        raise ConfigError(f"{key} must be at least 1, got {value}")
    return value


def _positive_float(environ: Mapping[str, str], key: str, default: float) -> float:
    raw = environ.get(key)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from exc
    if value <= 0:
        raise ConfigError(f"{key} must be greater than 0, got {value}")
    return value


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Build Settings from ``environ`` (defaults to ``os.environ``).

    Raises:
        ConfigError: If a numeric setting is malformed or out of range.
    """
    env = os.environ if environ is None else environ
    defaults = Settings()
    return Settings(
        client_id=env.get("DONELOG_CLIENT_ID") or None,
        tenant=env.get("DONELOG_TENANT") or defaults.tenant,
        redirect_uri=env.get("DONELOG_REDIRECT_URI") or defaults.redirect_uri,
        data_dir=Path(env.get("DONELOG_DATA_DIR") or defaults.data_dir),
        concurrency=_positive_int(env, "DONELOG_CONCURRENCY", defaults.concurrency),
        max_attempts=_positive_int(env, "DONELOG_MAX_ATTEMPTS", defaults.max_attempts),
        backoff=_positive_float(env, "DONELOG_BACKOFF", defaults.backoff),
        timeout=_positive_float(env, "DONELOG_TIMEOUT", defaults.timeout),
        log_level=(env.get("DONELOG_LOG_LEVEL") or defaults.log_level).upper(),
    )
