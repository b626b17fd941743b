from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
import http.client
import json
import time
from typing import Any, Self, cast
import urllib.error
import urllib.parse
import urllib.request

import loguru
from loguru import logger
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from monzo_sync.adapters.clients.retry import RetryPolicy
from monzo_sync.adapters.clients.token_store import TokenStore
from monzo_sync.errors import RemoteRejected, RemoteUnavailable, Unauthorized

DEFAULT_BASE_URL = "https://api.monzo.com"
DEFAULT_PAGE_SIZE = 100
DEFAULT_TIMEOUT_SECONDS = 30.0


def format_timestamp(value: datetime, *, round_up: bool = False) -> str:
    """Format a datetime the way the API expects (RFC 3339, UTC, whole seconds).

    With ``round_up`` a fractional second moves to the next whole second so an
    exclusive upper bound never cuts off rows the caller asked for.
    """
    value = _as_utc(value)
    if round_up and value.microsecond:
        value = value.replace(microsecond=0) + timedelta(seconds=1)
    return value.strftime("%Y-%m-%dT%H:%M:%SZ")


class MonzoBaseModel(BaseModel):
    """Shared base for Monzo response models with a short parse alias."""

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def parse(cls, data: Any) -> Self:
        """Validate an API payload; a malformed one raises RemoteRejected."""
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise RemoteRejected(
                200, f"Malformed {cls.__name__} payload: {e}"
            ) from e


class Account(MonzoBaseModel):
    id: str
    closed: bool = False
    created: datetime
    description: str = ""
    owner_type: str = ""
    currency: str = ""
    country_code: str = ""
    account_number: str = ""
    sort_code: str = ""


class AccountsResponse(MonzoBaseModel):
    accounts: list[Account] = Field(default_factory=list)


class Pot(MonzoBaseModel):
    id: str
    name: str
    balance: int
    currency: str
    deleted: bool = False
    pot_type: str = Field(default="", alias="type")


class PotsResponse(MonzoBaseModel):
    pots: list[Pot] = Field(default_factory=list)


class Merchant(MonzoBaseModel):
    id: str
    name: str = ""
    category: str = ""


class MerchantResponse(MonzoBaseModel):
    merchant: Merchant


class Category(MonzoBaseModel):
    id: str
    name: str = ""


class CategoriesResponse(MonzoBaseModel):
    categories: list[Category] = Field(default_factory=list)


class Balance(MonzoBaseModel):
    balance: int
    total_balance: int = 0
    currency: str
    spend_today: int = 0


class WhoAmI(MonzoBaseModel):
    authenticated: bool
    client_id: str
    user_id: str


class Transaction(MonzoBaseModel):
    id: str
    account_id: str
    amount: int
    currency: str
    local_amount: int
    local_currency: str
    created: datetime
    description: str = ""
    notes: str | None = None
    settled: datetime | None = None
    updated: datetime | None = None
    category: str = "general"
    merchant: Merchant | str | None = None

    @field_validator("settled", "updated", mode="before")
    @classmethod
    def _empty_timestamp_is_none(cls, value: Any) -> Any:
        # The API reports "not yet settled" as an empty string.
        if value == "":
            return None
        return value

    @field_validator("notes", mode="before")
    @classmethod
    def _empty_notes_is_none(cls, value: Any) -> Any:
        if value == "":
            return None
        return value

    @field_validator("merchant", mode="before")
    @classmethod
    def _empty_merchant_is_none(cls, value: Any) -> Any:
        if value == "":
            return None
        return value

    @property
    def merchant_id(self) -> str | None:
        if self.merchant is None:
            return None
        if isinstance(self.merchant, Merchant):
            return self.merchant.id
        return self.merchant

    @property
    def expanded_merchant(self) -> Merchant | None:
        return self.merchant if isinstance(self.merchant, Merchant) else None


class TransactionsResponse(MonzoBaseModel):
    transactions: list[Transaction] = Field(default_factory=list)


class MonzoClientLogger:
    """Handles all logging for MonzoClient with business logic separated."""

    def __init__(self, logger_instance: loguru.Logger = logger) -> None:
        self._logger = logger_instance

    def request(self, method: str, path: str) -> None:
        self._logger.bind(method=method, path=path).debug("{} {}", method, path)

    def retrying(self, path: str, attempt: int, delay: float, reason: str) -> None:
        self._logger.bind(path=path, attempt=attempt, delay=delay).warning(
            "Transient failure on {} ({}); retry {} in {:.1f}s",
            path,
            reason,
            attempt,
            delay,
        )

    def page_fetched(self, account_id: str, page: int, count: int) -> None:
        self._logger.bind(account_id=account_id, page=page, count=count).debug(
            "Fetched transactions page {} for {}: {} rows", page, account_id, count
        )


class MonzoClient:
    """Typed calls over the Monzo REST API."""

    def __init__(
        self,
        token_store: TokenStore,
        *,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        retry_policy: RetryPolicy | None = None,
        page_size: int = DEFAULT_PAGE_SIZE,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._token_store = token_store
        self._base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._retry_policy = retry_policy or RetryPolicy()
        self._page_size = page_size
        self._sleep = sleep
        self._logger = MonzoClientLogger()

    # Transport -----------------------------------------------------------

    def _open(self, request: urllib.request.Request) -> str:
        with urllib.request.urlopen(  # noqa: S310 - external HTTPS
            request, timeout=self._timeout
        ) as resp:
            return cast(bytes, resp.read()).decode("utf-8")

    def _parse_json_response(self, body: str) -> dict[str, Any]:
        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise RemoteRejected(200, f"Unparseable JSON response: {e}: {body}") from e

    def _get(
        self,
        path: str,
        params: list[tuple[str, str]] | None = None,
    ) -> dict[str, Any]:
        query = urllib.parse.urlencode(params or [])
        url = f"{self._base_url}{path}" + (f"?{query}" if query else "")

        attempt = 0
        while True:
            attempt += 1
            request = urllib.request.Request(  # noqa: S310
                url,
                headers={
                    "Authorization": f"Bearer {self._token_store.bearer_token()}",
                    "Accept": "application/json",
                },
                method="GET",
            )
            self._logger.request("GET", path)
            try:
                body = self._open(request)
            except urllib.error.HTTPError as e:
                err_body = e.read().decode("utf-8", "ignore") if e.fp else ""
                if e.code == 401:
                    raise Unauthorized(
                        f"Monzo API refused the access token: {err_body}"
                    ) from e
                if not RetryPolicy.is_retryable_status(e.code):
                    raise RemoteRejected(e.code, err_body) from e
                reason = f"HTTP {e.code}"
                failure: Exception = e
            except (urllib.error.URLError, http.client.HTTPException, OSError) as e:
                # Dropped connections during getresponse() or read() are not
                # wrapped in URLError.
                reason = f"network error: {e}"
                failure = e
            else:
                return self._parse_json_response(body)

            if not self._retry_policy.should_retry(attempt):
                raise RemoteUnavailable(
                    f"GET {path} failed after {attempt} attempts ({reason})"
                ) from failure
            delay = self._retry_policy.delay_for(attempt)
            self._logger.retrying(path, attempt, delay, reason)
            self._sleep(delay)

    # High-level APIs -----------------------------------------------------

    def whoami(self) -> WhoAmI:
        return WhoAmI.parse(self._get("/ping/whoami"))

    def list_accounts(self) -> list[Account]:
        resp = AccountsResponse.parse(self._get("/accounts"))
        return resp.accounts

    def list_pots(self, account_id: str) -> list[Pot]:
        resp = PotsResponse.parse(
            self._get("/pots", [("current_account_id", account_id)])
        )
        return resp.pots

    def get_balance(self, account_id: str) -> Balance:
        return Balance.parse(self._get("/balance", [("account_id", account_id)]))

    def get_merchant(self, merchant_id: str) -> Merchant:
        path = "/merchants/" + urllib.parse.quote(merchant_id, safe="")
        return MerchantResponse.parse(self._get(path)).merchant

    def get_category_set(self) -> list[Category]:
        return CategoriesResponse.parse(self._get("/categories")).categories

    def list_transactions(
        self,
        account_id: str,
        since: datetime,
        until: datetime,
    ) -> list[Transaction]:
        """Return every transaction created in ``[since, until)``.

        Follows pagination transparently: the first page is anchored on the
        ``since`` timestamp, later pages on the id of the last transaction
        seen. The result is de-duplicated by id and ordered by ``created``.
        """
        cursor = format_timestamp(since)
        before = format_timestamp(until, round_up=True)
        collected: list[Transaction] = []
        seen: set[str] = set()
        page = 0

        while True:
            page += 1
            params = [
                ("account_id", account_id),
                ("since", cursor),
                ("before", before),
                ("limit", str(self._page_size)),
                ("expand[]", "merchant"),
            ]
            resp = TransactionsResponse.parse(self._get("/transactions", params))
            self._logger.page_fetched(account_id, page, len(resp.transactions))

            new_rows = [txn for txn in resp.transactions if txn.id not in seen]
            for txn in new_rows:
                seen.add(txn.id)
            collected.extend(new_rows)

            if len(resp.transactions) < self._page_size or not new_rows:
                break
            cursor = resp.transactions[-1].id

        since_utc = _as_utc(since)
        until_utc = _as_utc(until)
        in_window = [
            txn for txn in collected if since_utc <= _as_utc(txn.created) < until_utc
        ]
        return sorted(in_window, key=lambda txn: _as_utc(txn.created))


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
