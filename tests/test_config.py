from __future__ import annotations

from datetime import date
from pathlib import Path

import pytest

from monzo_sync.config import (
    DEFAULT_DATABASE_URL,
    DEFAULT_REDIRECT_URI,
    load_category_overrides,
    load_settings,
)
from monzo_sync.errors import ConfigurationError


def create_environ(**overrides: str) -> dict[str, str]:
    environ = {
        "MONZO_CLIENT_ID": "oauth2client_123",
        "MONZO_CLIENT_SECRET": "mnzconf.secret",
    }
    environ.update(overrides)
    return environ


class TestLoadSettings:
    def test_defaults_applied(self) -> None:
        # act
        settings = load_settings(create_environ())

        # assert
        assert settings.client_id == "oauth2client_123"
        assert settings.redirect_uri == DEFAULT_REDIRECT_URI
        assert settings.database_url == DEFAULT_DATABASE_URL
        assert settings.pool_size == 4
        assert settings.window_days == 30
        assert settings.history_days == 89
        assert settings.start_date is None
        assert settings.token_path == Path(".monzo_token.json")
        assert settings.category_overrides == {}

    def test_missing_client_secret_raises(self) -> None:
        # input
        environ = {"MONZO_CLIENT_ID": "oauth2client_123"}

        # act / assert
        with pytest.raises(ConfigurationError, match="MONZO_CLIENT_SECRET"):
            load_settings(environ)

    def test_start_date_parsed(self) -> None:
        # act
        settings = load_settings(create_environ(MONZO_START_DATE="2024-01-31"))

        # assert
        assert settings.start_date == date(2024, 1, 31)

    def test_bad_start_date_raises(self) -> None:
        with pytest.raises(ConfigurationError, match="MONZO_START_DATE"):
            load_settings(create_environ(MONZO_START_DATE="31/01/2024"))

    @pytest.mark.parametrize("raw", ["0", "-3", "many"])
    def test_pool_size_must_be_positive_int(self, raw: str) -> None:
        with pytest.raises(ConfigurationError, match="MONZO_DB_POOL_SIZE"):
            load_settings(create_environ(MONZO_DB_POOL_SIZE=raw))

    def test_non_sqlite_database_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="SQLite"):
            load_settings(
                create_environ(MONZO_DATABASE_URL="postgresql://localhost/monzo")
            )

    def test_redirect_uri_must_be_http(self) -> None:
        with pytest.raises(ConfigurationError, match="MONZO_REDIRECT_URI"):
            load_settings(create_environ(MONZO_REDIRECT_URI="localhost:3000"))

    def test_category_overrides_loaded(self, tmp_path: Path) -> None:
        # setup
        path = tmp_path / "categories.yaml"
        path.write_text(
            "custom_categories:\n  CATEGORY_00009: Coffee\n", encoding="utf-8"
        )

        # act
        settings = load_settings(create_environ(MONZO_CATEGORIES_PATH=str(path)))

        # assert
        assert settings.category_overrides == {"category_00009": "Coffee"}


class TestLoadCategoryOverrides:
    def test_missing_file_raises(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            load_category_overrides(tmp_path / "nope.yaml")

    def test_invalid_yaml_raises(self, tmp_path: Path) -> None:
        # setup
        path = tmp_path / "bad.yaml"
        path.write_text("custom_categories: [unclosed", encoding="utf-8")

        # act / assert
        with pytest.raises(ConfigurationError, match="Failed to parse"):
            load_category_overrides(path)

    def test_non_mapping_section_raises(self, tmp_path: Path) -> None:
        # setup
        path = tmp_path / "list.yaml"
        path.write_text("custom_categories:\n  - groceries\n", encoding="utf-8")

        # act / assert
        with pytest.raises(ConfigurationError, match="must be a mapping"):
            load_category_overrides(path)

    def test_empty_file_gives_empty_mapping(self, tmp_path: Path) -> None:
        # setup
        path = tmp_path / "empty.yaml"
        path.write_text("", encoding="utf-8")

        # act / assert
        assert load_category_overrides(path) == {}
