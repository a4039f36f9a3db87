from __future__ import annotations

import json
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

DEFAULT_MAX_UPLOAD_BYTES = 5 * 1024 * 1024
DEFAULT_PAGE_SIZE = 10
DEFAULT_MAX_PAGE_SIZE = 100
DEFAULT_ACCESS_TTL_MINUTES = 15
DEFAULT_REFRESH_TTL_HOURS = 24

_TRUTHY = {"1", "true", "yes", "on"}
_FALSY = {"0", "false", "no", "off"}
_WHITESPACE_RE = re.compile(r"\s+")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def ensure_dir(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def json_dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, indent=2, sort_keys=True)


def read_json(path: Path) -> Any:
    return json.loads(path.read_text(encoding="utf-8"))


def clean_text(value: Any) -> str | None:
    """Trim a user-supplied value; empty strings become None."""

    if value is None:
        return None
    text = str(value).strip()
    return text or None


def collapse_whitespace(value: str) -> str:
    return _WHITESPACE_RE.sub(" ", value).strip()


def parse_bool(value: Any, default: bool = False) -> bool:
    if isinstance(value, bool):
        return value
    if value is None:
        return default
    raw = str(value).strip().lower()
    if raw in _TRUTHY:
        return True
    if raw in _FALSY:
        return False
    if not raw:
        return default
    raise ValueError(f"Not a boolean: {value!r}")


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    if value < minimum:
        return default
    return value


def get_appdata_dir() -> Path:
    return Path(os.environ.get("CMDCAT_APPDATA", "appdata"))


def database_path() -> Path:
    raw = os.environ.get("CMDCAT_DATABASE", "").strip()
    if not raw:
        return get_appdata_dir() / "catalog.sqlite"
    if raw.startswith("sqlite:///"):
        raw = raw[len("sqlite:///"):]
    elif "://" in raw:
        raise ValueError(f"Unsupported database URL: {raw}")
    return Path(raw)


def base_url() -> str | None:
    raw = os.environ.get("CMDCAT_BASE_URL", "").strip()
    return raw.rstrip("/") or None


def max_upload_bytes() -> int:
    return _env_int("CMDCAT_MAX_UPLOAD_BYTES", DEFAULT_MAX_UPLOAD_BYTES)


def max_page_size() -> int:
    return _env_int("CMDCAT_MAX_PAGE_SIZE", DEFAULT_MAX_PAGE_SIZE)


def auth_enabled() -> bool:
    raw = os.environ.get("CMDCAT_ENABLE_AUTH", "").strip().lower()
    return raw in _TRUTHY


def access_ttl_minutes() -> int:
    return _env_int("CMDCAT_ACCESS_TTL_MINUTES", DEFAULT_ACCESS_TTL_MINUTES)


def refresh_ttl_hours() -> int:
    return _env_int("CMDCAT_REFRESH_TTL_HOURS", DEFAULT_REFRESH_TTL_HOURS)


def configure_logging(level: str | None = None) -> None:
    name = (level or os.environ.get("CMDCAT_LOG_LEVEL", "") or "INFO").strip().upper()
    logging.basicConfig(
        level=getattr(logging, name, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
