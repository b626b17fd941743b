from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path
import threading
import time

import pytest

from monzo_sync.adapters.clients.token_store import (
    AccessGrant,
    TokenStore,
    load_grant,
    save_grant,
)
from monzo_sync.errors import Unauthorized

NOW = datetime(2024, 6, 1, 12, 0, tzinfo=UTC)


def create_grant(
    *,
    access_token: str = "access-1",
    refresh_token: str | None = "refresh-1",
    expires_at: datetime | None = None,
    authorized_at: datetime | None = None,
) -> AccessGrant:
    return AccessGrant(
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=expires_at or NOW + timedelta(hours=6),
        authorized_at=authorized_at or NOW - timedelta(days=1),
        user_id="user_1",
        client_id="oauth2client_123",
    )


class TestAccessGrant:
    def test_window_inside_grace_period_is_always_permitted(self) -> None:
        # setup
        grant = create_grant(authorized_at=NOW - timedelta(minutes=2))

        # act / assert
        assert grant.permits_window(NOW - timedelta(days=2000), NOW)

    def test_old_window_rejected_after_grace_period(self) -> None:
        # setup
        grant = create_grant(authorized_at=NOW - timedelta(minutes=10))

        # act / assert
        assert not grant.permits_window(NOW - timedelta(days=90), NOW)
        assert grant.permits_window(NOW - timedelta(days=89), NOW)

    def test_is_expired_applies_leeway(self) -> None:
        # setup
        grant = create_grant(expires_at=NOW + timedelta(seconds=10))

        # act / assert
        assert grant.is_expired(NOW)
        assert not grant.is_expired(NOW, leeway=timedelta(0))

    def test_refreshed_keeps_authorized_at(self) -> None:
        # setup
        grant = create_grant()

        # act
        fresh = grant.refreshed(
            access_token="access-2",
            refresh_token="refresh-2",
            expires_at=NOW + timedelta(hours=1),
        )

        # assert
        assert fresh.access_token == "access-2"
        assert fresh.authorized_at == grant.authorized_at

    def test_json_round_trip_through_file(self, tmp_path: Path) -> None:
        # setup
        path = tmp_path / "token.json"
        grant = create_grant()

        # act
        save_grant(path, grant)
        loaded = load_grant(path)

        # assert
        assert loaded == grant
        assert path.stat().st_mode & 0o777 == 0o600

    def test_load_missing_file_returns_none(self, tmp_path: Path) -> None:
        assert load_grant(tmp_path / "absent.json") is None

    def test_corrupt_file_raises_unauthorized(self, tmp_path: Path) -> None:
        # setup
        path = tmp_path / "token.json"
        path.write_text("{not json", encoding="utf-8")

        # act / assert
        with pytest.raises(Unauthorized):
            load_grant(path)


class TestTokenStore:
    def test_valid_token_returned_without_refresh(self) -> None:
        # setup
        calls: list[AccessGrant] = []
        store = TokenStore(
            create_grant(), refresher=calls.append, clock=lambda: NOW
        )

        # act
        token = store.bearer_token()

        # assert
        assert token == "access-1"  # noqa: S105
        assert calls == []

    def test_missing_grant_raises(self) -> None:
        store = TokenStore(None, clock=lambda: NOW)

        with pytest.raises(Unauthorized, match="auth"):
            store.bearer_token()

    def test_expired_token_refreshed_and_persisted(self) -> None:
        # setup
        expired = create_grant(expires_at=NOW - timedelta(minutes=1))
        saved: list[AccessGrant] = []

        def refresher(grant: AccessGrant) -> AccessGrant:
            return grant.refreshed(
                access_token="access-2",
                refresh_token="refresh-2",
                expires_at=NOW + timedelta(hours=6),
            )

        store = TokenStore(
            expired, refresher=refresher, on_refresh=saved.append, clock=lambda: NOW
        )

        # act
        token = store.bearer_token()

        # assert
        assert token == "access-2"  # noqa: S105
        assert store.grant is not None
        assert store.grant.refresh_token == "refresh-2"  # noqa: S105
        assert [g.access_token for g in saved] == ["access-2"]

    def test_expired_without_refresh_token_raises(self) -> None:
        # setup
        store = TokenStore(
            create_grant(refresh_token=None, expires_at=NOW - timedelta(hours=1)),
            refresher=lambda grant: grant,
            clock=lambda: NOW,
        )

        # act / assert
        with pytest.raises(Unauthorized, match="cannot be refreshed"):
            store.bearer_token()

    def test_refresher_failure_becomes_unauthorized(self) -> None:
        # setup
        def refresher(grant: AccessGrant) -> AccessGrant:
            raise RuntimeError("token endpoint down")

        store = TokenStore(
            create_grant(expires_at=NOW - timedelta(hours=1)),
            refresher=refresher,
            clock=lambda: NOW,
        )

        # act / assert
        with pytest.raises(Unauthorized, match="token endpoint down"):
            store.bearer_token()

    def test_concurrent_callers_share_one_refresh(self) -> None:
        # setup
        refresh_count = 0
        count_lock = threading.Lock()

        def refresher(grant: AccessGrant) -> AccessGrant:
            nonlocal refresh_count
            with count_lock:
                refresh_count += 1
            time.sleep(0.05)
            return grant.refreshed(
                access_token="access-2",
                refresh_token="refresh-2",
                expires_at=NOW + timedelta(hours=6),
            )

        store = TokenStore(
            create_grant(expires_at=NOW - timedelta(minutes=1)),
            refresher=refresher,
            clock=lambda: NOW,
        )
        tokens: list[str] = []
        barrier = threading.Barrier(8)

        def worker() -> None:
            barrier.wait()
            tokens.append(store.bearer_token())

        threads = [threading.Thread(target=worker) for _ in range(8)]

        # act
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=5)

        # assert
        assert refresh_count == 1
        assert tokens == ["access-2"] * 8
