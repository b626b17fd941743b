from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import date
import os
from pathlib import Path

import yaml

from monzo_sync.errors import ConfigurationError

DEFAULT_REDIRECT_URI = "http://localhost:3000/oauth/callback"
DEFAULT_DATABASE_URL = "sqlite:///monzo.db"
DEFAULT_TOKEN_PATH = ".monzo_token.json"


@dataclass(frozen=True, slots=True)
class Settings:
    """Settings loaded at process startup and validated before any I/O."""

    client_id: str
    client_secret: str
    redirect_uri: str = DEFAULT_REDIRECT_URI
    database_url: str = DEFAULT_DATABASE_URL
    pool_size: int = 4
    start_date: date | None = None
    window_days: int = 30
    history_days: int = 89
    token_path: Path = Path(DEFAULT_TOKEN_PATH)
    category_overrides: dict[str, str] = field(default_factory=dict)


def _require(environ: Mapping[str, str], name: str) -> str:
    value = environ.get(name, "").strip()
    if not value:
        raise ConfigurationError(f"Missing required environment variable: {name}")
    return value


def _positive_int(environ: Mapping[str, str], name: str, default: int) -> int:
    raw = environ.get(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError as e:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from e
    if value <= 0:
        raise ConfigurationError(f"{name} must be positive, got {value}")
    return value


def _start_date(environ: Mapping[str, str]) -> date | None:
    raw = environ.get("MONZO_START_DATE", "").strip()
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as e:
        raise ConfigurationError(
            f"MONZO_START_DATE must be an ISO date (YYYY-MM-DD), got {raw!r}"
        ) from e


def load_category_overrides(path: Path) -> dict[str, str]:
    """Load the ``custom_categories`` mapping from a YAML file.

    Keys are remote category ids and are lower-cased so lookups are
    case-insensitive. Values are display names.
    """
    if not path.is_file():
        raise ConfigurationError(f"Category overrides file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Failed to parse {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{path} must contain a mapping at the top level")
    custom = data.get("custom_categories") or {}
    if not isinstance(custom, dict):
        raise ConfigurationError(f"'custom_categories' in {path} must be a mapping")
    return {str(key).lower(): str(value) for key, value in custom.items()}


def load_settings(environ: Mapping[str, str] | None = None) -> Settings:
    """Load settings from the environment and validate startup requirements."""
    env = os.environ if environ is None else environ

    client_id = _require(env, "MONZO_CLIENT_ID")
    client_secret = _require(env, "MONZO_CLIENT_SECRET")
    redirect_uri = env.get("MONZO_REDIRECT_URI", "").strip() or DEFAULT_REDIRECT_URI
    if not redirect_uri.startswith(("http://", "https://")):
        raise ConfigurationError(
            f"MONZO_REDIRECT_URI must be an http(s) URL, got {redirect_uri!r}"
        )

    database_url = env.get("MONZO_DATABASE_URL", "").strip() or DEFAULT_DATABASE_URL
    if not database_url.startswith("sqlite"):
        raise ConfigurationError(
            f"MONZO_DATABASE_URL must be a SQLite URL, got {database_url!r}"
        )

    categories_path = env.get("MONZO_CATEGORIES_PATH", "").strip()
    overrides = (
        load_category_overrides(Path(categories_path)) if categories_path else {}
    )

    return Settings(
        client_id=client_id,
        client_secret=client_secret,
        redirect_uri=redirect_uri,
        database_url=database_url,
        pool_size=_positive_int(env, "MONZO_DB_POOL_SIZE", 4),
        start_date=_start_date(env),
        window_days=_positive_int(env, "MONZO_WINDOW_DAYS", 30),
        history_days=_positive_int(env, "MONZO_HISTORY_DAYS", 89),
        token_path=Path(env.get("MONZO_TOKEN_PATH", "").strip() or DEFAULT_TOKEN_PATH),
        category_overrides=overrides,
    )
