"""Process-wide configuration for the reconciliation toolkit.

Values are read once from the environment (and an optional ``.env`` file) into
an immutable :class:`Settings` instance.  Credentials are kept out of the
``repr`` so that settings objects can be logged safely.
"""
from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import tzinfo
from pathlib import Path
from typing import Mapping, Optional

import pytz
from dotenv import load_dotenv

from data_paths import DATA_ROOT

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "+09:00"
KOREA_OFFSET = pytz.FixedOffset(9 * 60)
DEFAULT_BATCH_SIZE = 100
MAX_BATCH_SIZE = 1000
DEFAULT_PAGE_SIZE = 1000


class ConfigurationError(RuntimeError):
    """Raised when a required setting is missing or malformed."""


def _safe_timezone(name: Optional[str]) -> tzinfo:
    # Business days use a flat UTC+9, without Korea's historical DST.
    if not name or name == DEFAULT_TIMEZONE:
        return KOREA_OFFSET
    try:
        return pytz.timezone(name)
    except pytz.UnknownTimeZoneError:
        LOGGER.warning("Unknown timezone %r; falling back to UTC+9", name)
        return KOREA_OFFSET


def _int_setting(env: Mapping[str, str], key: str, default: int) -> int:
    raw = env.get(key)
    if raw in (None, ""):
        return default
    try:
        return int(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}")


def _float_setting(env: Mapping[str, str], key: str, default: float) -> float:
    raw = env.get(key)
    if raw in (None, ""):
        return default
    try:
        return float(raw)
    except ValueError:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}")


@dataclass(frozen=True)
class Settings:
    supabase_url: str = ""
    supabase_key: str = field(default="", repr=False)
    firebase_credentials: str = ""
    storage_bucket: str = ""
    target_backend: str = "supabase"
    sqlite_path: Path = DATA_ROOT / "mirror.db"
    timezone_name: str = DEFAULT_TIMEZONE
    batch_size: int = DEFAULT_BATCH_SIZE
    page_size: int = DEFAULT_PAGE_SIZE
    retry_attempts: int = 3
    retry_backoff: float = 0.5
    storage_concurrency: int = 10
    request_timeout: float = 30.0

    @property
    def timezone(self) -> tzinfo:
        return _safe_timezone(self.timezone_name)

    def require_supabase(self) -> None:
        missing = [
            name
            for name, value in (
                ("SUPABASE_URL", self.supabase_url),
                ("SUPABASE_SERVICE_ROLE_KEY", self.supabase_key),
            )
            if not value
        ]
        if missing:
            raise ConfigurationError(
                "Missing Supabase configuration: " + ", ".join(missing)
            )

    def require_firebase(self) -> None:
        if not self.firebase_credentials:
            raise ConfigurationError(
                "Missing Firebase configuration: set FIREBASE_CREDENTIALS or "
                "GOOGLE_APPLICATION_CREDENTIALS to a service account file"
            )
        if not Path(self.firebase_credentials).is_file():
            raise ConfigurationError(
                f"Firebase credentials file not found: {self.firebase_credentials}"
            )

    def require_storage_bucket(self) -> None:
        if not self.storage_bucket:
            raise ConfigurationError("Missing FIREBASE_STORAGE_BUCKET")


def load_settings(
    env: Optional[Mapping[str, str]] = None,
    *,
    dotenv_path: Optional[Path] = None,
) -> Settings:
    """Build :class:`Settings` from ``env`` (defaults to ``os.environ``).

    When ``env`` is omitted the ``.env`` file is loaded first; variables that
    are already set in the process environment win.
    """

    if env is None:
        load_dotenv(dotenv_path=dotenv_path)
        env = os.environ

    backend = (env.get("RECONCILE_TARGET") or "supabase").strip().lower()
    if backend not in {"supabase", "sqlite"}:
        raise ConfigurationError(
            f"RECONCILE_TARGET must be 'supabase' or 'sqlite', got {backend!r}"
        )

    batch_size = _int_setting(env, "WRITE_BATCH_SIZE", DEFAULT_BATCH_SIZE)
    batch_size = max(1, min(batch_size, MAX_BATCH_SIZE))

    sqlite_path = env.get("RECONCILE_SQLITE_PATH")

    return Settings(
        supabase_url=(env.get("SUPABASE_URL") or "").rstrip("/"),
        supabase_key=env.get("SUPABASE_SERVICE_ROLE_KEY") or "",
        firebase_credentials=(
            env.get("FIREBASE_CREDENTIALS")
            or env.get("GOOGLE_APPLICATION_CREDENTIALS")
            or ""
        ),
        storage_bucket=env.get("FIREBASE_STORAGE_BUCKET") or "",
        target_backend=backend,
        sqlite_path=Path(sqlite_path) if sqlite_path else DATA_ROOT / "mirror.db",
        timezone_name=env.get("BUSINESS_TIMEZONE") or DEFAULT_TIMEZONE,
        batch_size=batch_size,
        page_size=max(1, _int_setting(env, "READ_PAGE_SIZE", DEFAULT_PAGE_SIZE)),
        retry_attempts=max(1, _int_setting(env, "RETRY_ATTEMPTS", 3)),
        retry_backoff=max(0.0, _float_setting(env, "RETRY_BACKOFF_SECONDS", 0.5)),
        storage_concurrency=max(1, _int_setting(env, "STORAGE_CONCURRENCY", 10)),
        request_timeout=max(1.0, _float_setting(env, "REQUEST_TIMEOUT_SECONDS", 30.0)),
    )
