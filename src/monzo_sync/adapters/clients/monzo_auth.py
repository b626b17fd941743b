from __future__ import annotations

from collections.abc import Callable
from datetime import datetime, timedelta
from http import HTTPStatus
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
import json
import queue
import threading
from typing import Any, NamedTuple, cast
import urllib.error
import urllib.parse
import urllib.request
import uuid
import webbrowser

from loguru import logger

from monzo_sync.adapters.clients.token_store import AccessGrant, utcnow
from monzo_sync.errors import Unauthorized

AUTH_BASE_URL = "https://auth.monzo.com/"
TOKEN_URL = "https://api.monzo.com/oauth2/token"

CALLBACK_SUCCESS_HTML = """\
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8" />
  <title>Monzo authorisation complete</title>
  <style>
    body { font-family: sans-serif; margin: 3rem; }
    .card {
      max-width: 32rem;
      padding: 2rem;
      border: 1px solid #ccc;
      border-radius: 0.5rem;
    }
  </style>
</head>
<body>
  <div class="card">
    <h1>Authorisation received</h1>
    <p>Approve the request in the Monzo app, then return to the terminal.</p>
  </div>
</body>
</html>
"""

CALLBACK_ERROR_HTML = """\
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8" />
  <title>Monzo authorisation failed</title>
  <style>
    body { font-family: sans-serif; margin: 3rem; color: #941a1d; }
  </style>
</head>
<body>
  <h1>Authorisation failed</h1>
  <p>The callback did not include an authorisation code.</p>
</body>
</html>
"""


class AuthCode(NamedTuple):
    code: str
    state: str


class MonzoAuthClient:
    """Authorization-code exchange and refresh against the Monzo token endpoint."""

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        token_url: str = TOKEN_URL,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._redirect_uri = redirect_uri
        self._token_url = token_url
        self._clock = clock

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": self._client_id,
            "redirect_uri": self._redirect_uri,
            "response_type": "code",
            "state": state,
        }
        return AUTH_BASE_URL + "?" + urllib.parse.urlencode(params)

    def _post_form(self, form: dict[str, str]) -> dict[str, Any]:
        data = urllib.parse.urlencode(form).encode("utf-8")
        req = urllib.request.Request(  # noqa: S310
            self._token_url,
            data=data,
            headers={"Content-Type": "application/x-www-form-urlencoded"},
            method="POST",
        )
        try:
            with urllib.request.urlopen(req, timeout=30) as resp:  # noqa: S310
                body = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            err_body = e.read().decode("utf-8", "ignore") if e.fp else ""
            raise Unauthorized(f"Token request failed ({e.code}): {err_body}") from e
        except urllib.error.URLError as e:
            raise Unauthorized(f"Network error calling token endpoint: {e}") from e

        try:
            return cast(dict[str, Any], json.loads(body))
        except json.JSONDecodeError as e:
            raise Unauthorized(f"Token endpoint returned invalid JSON: {e}") from e

    def _grant_from_response(
        self,
        payload: dict[str, Any],
        *,
        authorized_at: datetime,
    ) -> AccessGrant:
        try:
            access_token = str(payload["access_token"])
            expires_in = int(payload["expires_in"])
        except (KeyError, TypeError, ValueError) as e:
            raise Unauthorized(f"Token response is missing fields: {e}") from e
        return AccessGrant(
            access_token=access_token,
            refresh_token=payload.get("refresh_token"),
            expires_at=self._clock() + timedelta(seconds=expires_in),
            authorized_at=authorized_at,
            user_id=payload.get("user_id"),
            client_id=payload.get("client_id", self._client_id),
        )

    def exchange_code(self, code: str) -> AccessGrant:
        """Exchange an authorization code; the grant's clock starts now."""
        payload = self._post_form(
            {
                "grant_type": "authorization_code",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "redirect_uri": self._redirect_uri,
                "code": code,
            }
        )
        return self._grant_from_response(payload, authorized_at=self._clock())

    def refresh(self, grant: AccessGrant) -> AccessGrant:
        """Trade the grant's refresh token for a new token pair."""
        if not grant.refresh_token:
            raise Unauthorized("Grant has no refresh token")
        payload = self._post_form(
            {
                "grant_type": "refresh_token",
                "client_id": self._client_id,
                "client_secret": self._client_secret,
                "refresh_token": grant.refresh_token,
            }
        )
        fresh = self._grant_from_response(payload, authorized_at=grant.authorized_at)
        return grant.refreshed(
            access_token=fresh.access_token,
            refresh_token=fresh.refresh_token,
            expires_at=fresh.expires_at,
        )


def parse_callback_query(query: str) -> AuthCode | None:
    """Pull ``code`` and ``state`` out of a callback query string."""
    params = urllib.parse.parse_qs(query)
    code = params.get("code", [None])[0]
    state = params.get("state", [""])[0]
    if not code:
        return None
    return AuthCode(code=code, state=state or "")


def _build_callback_handler(
    code_queue: queue.Queue[AuthCode],
    expected_path: str,
) -> type[BaseHTTPRequestHandler]:
    class CallbackHandler(BaseHTTPRequestHandler):
        def _send_html_response(self, body: str, status: HTTPStatus) -> None:
            body_bytes = body.encode("utf-8")
            self.send_response(status)
            self.send_header("Content-Type", "text/html; charset=utf-8")
            self.send_header("Content-Length", str(len(body_bytes)))
            self.end_headers()
            self.wfile.write(body_bytes)

        def do_GET(self) -> None:  # noqa: N802
            parsed = urllib.parse.urlparse(self.path)
            if parsed.path != expected_path:
                self.send_error(HTTPStatus.NOT_FOUND, "Not Found")
                return

            auth_code = parse_callback_query(parsed.query)
            if auth_code is None:
                self._send_html_response(CALLBACK_ERROR_HTML, HTTPStatus.BAD_REQUEST)
                return

            code_queue.put(auth_code)
            self._send_html_response(CALLBACK_SUCCESS_HTML, HTTPStatus.OK)

        def log_message(self, format: str, *args: Any) -> None:  # noqa: A003
            # Silence default stdout logging to keep CLI output clean.
            return

    return CallbackHandler


def start_callback_server(
    *,
    host: str,
    port: int,
    path: str,
    code_queue: queue.Queue[AuthCode],
) -> tuple[ThreadingHTTPServer, threading.Thread]:
    """Start the local HTTP listener that receives the OAuth redirect."""
    handler_cls = _build_callback_handler(code_queue, path)
    server = ThreadingHTTPServer((host, port), handler_cls)
    thread = threading.Thread(
        target=server.serve_forever,
        name="MonzoCallbackServer",
        daemon=True,
    )
    thread.start()
    return server, thread


def shutdown_callback_server(
    server: ThreadingHTTPServer,
    server_thread: threading.Thread,
) -> None:
    server.shutdown()
    server.server_close()
    server_thread.join(timeout=1)


def wait_for_code(
    code_queue: queue.Queue[AuthCode],
    *,
    timeout_seconds: float,
) -> AuthCode:
    try:
        return code_queue.get(timeout=timeout_seconds)
    except queue.Empty:
        raise Unauthorized(
            "Timed out waiting for Monzo to redirect with an authorisation code."
        ) from None


def run_authorization(
    auth_client: MonzoAuthClient,
    *,
    redirect_uri: str,
    timeout_seconds: float = 300,
    open_browser: Callable[[str], bool] = webbrowser.open,
) -> AccessGrant:
    """Run the browser OAuth flow end to end and return the new grant."""
    parsed = urllib.parse.urlparse(redirect_uri)
    host = parsed.hostname or "localhost"
    port = parsed.port or 80
    path = parsed.path or "/"

    code_queue: queue.Queue[AuthCode] = queue.Queue()
    try:
        server, server_thread = start_callback_server(
            host=host, port=port, path=path, code_queue=code_queue
        )
    except OSError as e:
        raise Unauthorized(
            f"Failed to start callback listener on {host}:{port}: {e}"
        ) from e

    try:
        state = str(uuid.uuid4())
        url = auth_client.authorization_url(state)
        if not open_browser(url):
            logger.warning("Unable to open a browser. Open this URL manually: {}", url)

        auth_code = wait_for_code(code_queue, timeout_seconds=timeout_seconds)
        if auth_code.state != state:
            raise Unauthorized("OAuth state mismatch; refusing the callback.")
        return auth_client.exchange_code(auth_code.code)
    finally:
        shutdown_callback_server(server, server_thread)
