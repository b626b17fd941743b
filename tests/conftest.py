"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Iterator

from loguru import logger
import pytest

from monzo_sync.adapters.db.facade import DB


@pytest.fixture(autouse=True)
def _quiet_logs() -> Iterator[None]:
    """Keep loguru output out of test reports unless a test adds its own sink."""
    logger.disable("monzo_sync")
    yield
    logger.enable("monzo_sync")


@pytest.fixture
def db() -> DB:
    """In-memory database migrated to the latest schema."""
    database = DB("sqlite:///:memory:")
    database.migrate()
    return database
