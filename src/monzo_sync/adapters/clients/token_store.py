from __future__ import annotations

from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from datetime import UTC, datetime, timedelta
import json
from pathlib import Path
import threading
from typing import Any

from loguru import logger

from monzo_sync.errors import Unauthorized

# Monzo only serves full transaction history for a few minutes after the user
# approves access; afterwards reads are limited to the trailing history window.
DEFAULT_GRACE_PERIOD = timedelta(minutes=5)
DEFAULT_HISTORY_DAYS = 89
EXPIRY_LEEWAY = timedelta(seconds=30)


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass(frozen=True, slots=True)
class AccessGrant:
    """OAuth token pair plus the timing facts that bound historical reads."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime
    authorized_at: datetime
    user_id: str | None = None
    client_id: str | None = None

    def is_expired(self, now: datetime, *, leeway: timedelta = EXPIRY_LEEWAY) -> bool:
        return now + leeway >= self.expires_at

    def permits_window(
        self,
        since: datetime,
        now: datetime,
        *,
        history_days: int = DEFAULT_HISTORY_DAYS,
        grace_period: timedelta = DEFAULT_GRACE_PERIOD,
    ) -> bool:
        """Return True if a fetch starting at ``since`` is allowed at ``now``."""
        if now - self.authorized_at <= grace_period:
            return True
        return since >= now - timedelta(days=history_days)

    def refreshed(
        self,
        *,
        access_token: str,
        refresh_token: str | None,
        expires_at: datetime,
    ) -> AccessGrant:
        """Return a new grant with fresh tokens; ``authorized_at`` is kept."""
        return replace(
            self,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=expires_at,
        )

    def to_json(self) -> str:
        data: dict[str, Any] = asdict(self)
        data["expires_at"] = self.expires_at.isoformat()
        data["authorized_at"] = self.authorized_at.isoformat()
        return json.dumps(data, indent=2)

    @classmethod
    def from_json(cls, raw: str) -> AccessGrant:
        try:
            data = json.loads(raw)
            return cls(
                access_token=data["access_token"],
                refresh_token=data.get("refresh_token"),
                expires_at=datetime.fromisoformat(data["expires_at"]),
                authorized_at=datetime.fromisoformat(data["authorized_at"]),
                user_id=data.get("user_id"),
                client_id=data.get("client_id"),
            )
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise Unauthorized(f"Stored access token is unreadable: {e}") from e


def load_grant(path: Path) -> AccessGrant | None:
    """Read a grant from ``path``; None when no token has been stored yet."""
    if not path.is_file():
        return None
    return AccessGrant.from_json(path.read_text(encoding="utf-8"))


def save_grant(path: Path, grant: AccessGrant) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(grant.to_json(), encoding="utf-8")
    path.chmod(0o600)


Refresher = Callable[[AccessGrant], AccessGrant]


class TokenStore:
    """Holds the current grant and hands out valid bearer tokens.

    Refreshes are single-flight: callers that find the token expired queue on
    one lock, and whoever gets it second re-checks expiry before issuing
    another request. Monzo refresh tokens are single-use, so a duplicate
    refresh would invalidate the first.
    """

    def __init__(
        self,
        grant: AccessGrant | None,
        *,
        refresher: Refresher | None = None,
        on_refresh: Callable[[AccessGrant], None] | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._grant = grant
        self._refresher = refresher
        self._on_refresh = on_refresh
        self._clock = clock
        self._lock = threading.Lock()

    @property
    def grant(self) -> AccessGrant | None:
        return self._grant

    def bearer_token(self) -> str:
        """Return a valid access token, refreshing it first when expired."""
        grant = self._grant
        if grant is None:
            raise Unauthorized("No access token stored. Run `monzo-sync auth` first.")
        if not grant.is_expired(self._clock()):
            return grant.access_token

        with self._lock:
            grant = self._grant
            if grant is not None and not grant.is_expired(self._clock()):
                return grant.access_token
            return self._refresh_locked().access_token

    def _refresh_locked(self) -> AccessGrant:
        grant = self._grant
        if grant is None or not grant.refresh_token or self._refresher is None:
            raise Unauthorized(
                "Access token expired and cannot be refreshed. "
                "Run `monzo-sync auth` again."
            )

        logger.info("Refreshing Monzo access token")
        try:
            refreshed = self._refresher(grant)
        except Unauthorized:
            raise
        except Exception as e:
            raise Unauthorized(f"Failed to refresh access token: {e}") from e

        self._grant = refreshed
        if self._on_refresh is not None:
            self._on_refresh(refreshed)
        return refreshed
