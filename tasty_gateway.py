"""
tasty_gateway.py: HTTP surface of the OAuth server and the /mcp bearer gate.

OAuthGateway is an ASGI middleware placed in front of the MCP app. It
answers the OAuth endpoints itself and lets everything else through only
with a valid Bearer token (an issued access token or the operator secret).

  GET  /.well-known/oauth-protected-resource   RFC 9728 metadata
  GET  /.well-known/oauth-authorization-server RFC 8414 metadata
  POST /oauth/register                         RFC 7591 registration
  GET  /oauth/authorize                        consent page
  POST /oauth/authorize/submit                 consent form (302 with code)
  POST /oauth/token                            code + verifier for token
"""

import html as html_mod
import json
import logging
import time
import urllib.parse
from collections import deque
from typing import Any

from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.types import ASGIApp, Receive, Scope, Send

from tasty_oauth import (
    AuthorizationServer,
    ConsentPrompt,
    Err,
    OAuthError,
    Redirect,
    _audit,
    constant_time_equals,
)

logger = logging.getLogger("tasty-oauth")

RATE_LIMIT_WINDOW = 60  # seconds
RATE_LIMIT_MAX_REQUESTS = 30  # per window per IP per endpoint
SWEEP_INTERVAL = 300  # seconds between expired code/token sweeps

PROTECTED_RESOURCE_PATHS = (
    "/.well-known/oauth-protected-resource",
    "/.well-known/oauth-protected-resource/mcp",
)
SERVER_METADATA_PATH = "/.well-known/oauth-authorization-server"
REGISTER_PATH = "/oauth/register"
AUTHORIZE_PATH = "/oauth/authorize"
SUBMIT_PATH = "/oauth/authorize/submit"
TOKEN_PATH = "/oauth/token"

RATE_LIMITED_PATHS = {REGISTER_PATH, AUTHORIZE_PATH, SUBMIT_PATH, TOKEN_PATH}


# ---------------------------------------------------------------------------
# Rate limiter
# ---------------------------------------------------------------------------

class RateLimiter:
    """In-memory sliding window rate limiter."""

    def __init__(self, max_requests: int = RATE_LIMIT_MAX_REQUESTS,
                 window: int = RATE_LIMIT_WINDOW):
        self.max_requests = max_requests
        self.window = window
        self._buckets: dict[str, deque[float]] = {}

    def is_allowed(self, key: str, now: float | None = None) -> bool:
        now = time.time() if now is None else now
        cutoff = now - self.window
        bucket = self._buckets.setdefault(key, deque())
        while bucket and bucket[0] <= cutoff:
            bucket.popleft()
        if len(bucket) >= self.max_requests:
            return False
        bucket.append(now)
        return True

    def cleanup(self, now: float | None = None) -> None:
        """Drop buckets with nothing left inside the window."""
        cutoff = (time.time() if now is None else now) - self.window
        stale = [k for k, b in self._buckets.items() if not b or b[-1] <= cutoff]
        for k in stale:
            del self._buckets[k]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def client_ip(request: Request) -> str:
    """Real client IP, preferring CF-Connecting-IP."""
    cf_ip = request.headers.get("cf-connecting-ip")
    if cf_ip:
        return cf_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def base_url(request: Request) -> str:
    """Public base URL as seen by the caller, honouring reverse proxies."""
    proto = request.headers.get("x-forwarded-proto") or request.url.scheme or "https"
    host = (request.headers.get("x-forwarded-host")
            or request.headers.get("host")
            or "localhost:5000")
    # Proxies may append comma-separated hops; the first one is the client's.
    proto = proto.split(",")[0].strip()
    host = host.split(",")[0].strip()
    return f"{proto}://{host}"


def _json(status: int, data: dict[str, Any],
          headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(data, status_code=status,
                        headers={"Cache-Control": "no-store", **(headers or {})})


def _error(err: OAuthError) -> JSONResponse:
    return _json(err.status_code, err.to_dict())


def _parse_form(body: bytes) -> dict[str, str]:
    """Parse application/x-www-form-urlencoded, first value per key."""
    parsed = urllib.parse.parse_qs(body.decode("utf-8", errors="replace"),
                                   keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


async def _read_params(request: Request) -> dict[str, Any]:
    """Form or JSON body, depending on Content-Type."""
    body = await request.body()
    if request.headers.get("content-type", "").startswith("application/json"):
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}
    return _parse_form(body)


def _str_param(params: dict[str, Any], key: str) -> str | None:
    value = params.get(key)
    return value if isinstance(value, str) else None


# ---------------------------------------------------------------------------
# HTML templates
# ---------------------------------------------------------------------------

_PAGE_STYLE = """
        body { font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif;
            background: #0f172a; color: #e2e8f0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0; }
        .card { background: #1e293b; border-radius: 12px; padding: 2rem;
            max-width: 420px; width: 90%; box-shadow: 0 4px 24px rgba(0, 0, 0, 0.3); }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #f8fafc; }
        .subtitle { color: #94a3b8; margin-bottom: 1.5rem; font-size: 0.9rem; }
        .client-info { background: #0f172a; border-radius: 8px; padding: 0.75rem 1rem;
            margin-bottom: 1.5rem; font-size: 0.85rem; color: #94a3b8; }
        .client-info strong { color: #e2e8f0; }
        label { display: block; margin-bottom: 0.4rem; font-size: 0.9rem; color: #cbd5e1; }
        input[type="password"] { width: 100%; box-sizing: border-box; padding: 0.65rem 0.75rem;
            border: 1px solid #334155; border-radius: 8px; background: #0f172a;
            color: #f8fafc; font-size: 0.95rem; margin-bottom: 1rem; }
        .buttons { display: flex; gap: 0.75rem; }
        button { flex: 1; padding: 0.65rem; border: none; border-radius: 8px;
            font-size: 0.95rem; cursor: pointer; font-weight: 500; }
        .approve { background: #3b82f6; color: #fff; }
        .approve:hover { background: #2563eb; }
        .deny { background: #334155; color: #e2e8f0; }
        .deny:hover { background: #475569; }
        .error { color: #f87171; font-size: 0.85rem; margin-bottom: 0.75rem; }
"""


def consent_page(prompt: ConsentPrompt) -> str:
    e = html_mod.escape
    error_html = f'<p class="error">{e(prompt.error)}</p>' if prompt.error else ""
    hidden = "\n".join(
        f'            <input type="hidden" name="{name}" value="{e(value)}">'
        for name, value in (
            ("client_id", prompt.client_id),
            ("redirect_uri", prompt.redirect_uri),
            ("state", prompt.state),
            ("code_challenge", prompt.code_challenge),
            ("code_challenge_method", prompt.code_challenge_method),
            ("scope", prompt.scope),
        )
    )
    return f"""<!DOCTYPE html>
<html lang="en">
<head>
    <meta charset="UTF-8">
    <title>TastyTrade MCP - Authorization</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_PAGE_STYLE}    </style>
</head>
<body>
    <div class="card">
        <h1>Authorize MCP Access</h1>
        <p class="subtitle">An application is requesting access to your TastyTrade MCP server.</p>
        <div class="client-info">
            <strong>{e(prompt.client_name)}</strong> wants to access your MCP tools.
            <br>Scope: <strong>{e(prompt.scope)}</strong>
        </div>
        <form method="POST" action="{SUBMIT_PATH}">
{hidden}
            <label for="token">Enter your MCP Bearer Token</label>
            <input type="password" id="token" name="token" placeholder="Your MCP_BEARER_TOKEN"
                autocomplete="off">
            {error_html}
            <div class="buttons">
                <button type="submit" name="action" value="deny" class="deny">Deny</button>
                <button type="submit" name="action" value="approve" class="approve">Authorize</button>
            </div>
        </form>
    </div>
</body>
</html>"""


# ---------------------------------------------------------------------------
# OAuthGateway
# ---------------------------------------------------------------------------

class OAuthGateway:
    """ASGI middleware serving the OAuth endpoints and guarding the MCP app.

    ``issuer_url`` pins the public base URL; when unset it is derived per
    request from the forwarding headers.
    """

    OPEN_PATHS = {"/health"}

    def __init__(self, app: ASGIApp, server: AuthorizationServer,
                 issuer_url: str | None = None,
                 rate_limiter: RateLimiter | None = None):
        self.app = app
        self.server = server
        self.issuer_url = issuer_url.rstrip("/") if issuer_url else None
        self._rate_limiter = rate_limiter or RateLimiter()
        self._last_sweep = time.time()
        self._routes = {
            SERVER_METADATA_PATH: ("GET", self._handle_server_metadata),
            REGISTER_PATH: ("POST", self._handle_register),
            AUTHORIZE_PATH: ("GET", self._handle_authorize),
            SUBMIT_PATH: ("POST", self._handle_submit),
            TOKEN_PATH: ("POST", self._handle_token),
        }
        for path in PROTECTED_RESOURCE_PATHS:
            self._routes[path] = ("GET", self._handle_resource_metadata)

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        self._maybe_sweep()
        request = Request(scope, receive)
        path = request.url.path

        if path in self._routes:
            response = await self._dispatch(request, path)
            await response(scope, receive, send)
            return

        if path in self.OPEN_PATHS:
            await self.app(scope, receive, send)
            return

        rejection = self._authenticate(request)
        if rejection is not None:
            await rejection(scope, receive, send)
            return
        await self.app(scope, receive, send)

    def _maybe_sweep(self) -> None:
        now = time.time()
        if now - self._last_sweep > SWEEP_INTERVAL:
            self._rate_limiter.cleanup(now)
            self.server.purge_expired()
            self._last_sweep = now

    def _base(self, request: Request) -> str:
        return self.issuer_url or base_url(request)

    async def _dispatch(self, request: Request, path: str) -> Response:
        method, handler = self._routes[path]
        if request.method != method:
            return _json(405, {"error": "method_not_allowed"}, {"Allow": method})

        if path in RATE_LIMITED_PATHS:
            ip = client_ip(request)
            if not self._rate_limiter.is_allowed(f"{path}:{ip}"):
                _audit("rate_limited", ip=ip, path=path)
                return _json(429, {
                    "error": "too_many_requests",
                    "error_description": "Rate limit exceeded. Try again later.",
                }, {"Retry-After": str(self._rate_limiter.window)})

        try:
            return await handler(request)
        except Exception:
            logger.exception("oauth handler failed: %s %s", request.method, path)
            return _json(500, {"error": "server_error"})

    # --- Resource boundary ---

    def _authenticate(self, request: Request) -> Response | None:
        """None when the request may proceed, else the 401 to send."""
        metadata_url = f"{self._base(request)}{PROTECTED_RESOURCE_PATHS[0]}"
        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer "):
            return _json(401, {"error": "unauthorized"}, {
                "WWW-Authenticate": f'Bearer resource_metadata="{metadata_url}"',
            })

        token = auth[7:]
        secret = self.server.operator_secret
        if secret and constant_time_equals(token, secret):
            return None
        if self.server.validate_bearer(token) is not None:
            return None

        _audit("bearer_rejected", ip=client_ip(request), path=request.url.path)
        return _json(401, {"error": "invalid_token"}, {
            "WWW-Authenticate":
                f'Bearer error="invalid_token", resource_metadata="{metadata_url}"',
        })

    # --- Endpoint handlers ---

    async def _handle_resource_metadata(self, request: Request) -> Response:
        base = self._base(request)
        return _json(200, self.server.protected_resource_metadata(base, base))

    async def _handle_server_metadata(self, request: Request) -> Response:
        return _json(200, self.server.metadata(self._base(request)))

    async def _handle_register(self, request: Request) -> Response:
        body = await request.body()
        try:
            metadata = json.loads(body)
        except ValueError:
            metadata = None
        result = self.server.register(metadata)
        if isinstance(result, Err):
            logger.warning("registration failed: %s", result.error.description)
            return _error(result.error.to_oauth_error())
        return _json(201, result.value.to_dict())

    async def _handle_authorize(self, request: Request) -> Response:
        q = request.query_params
        result = self.server.begin_authorization(
            client_id=q.get("client_id"),
            redirect_uri=q.get("redirect_uri"),
            state=q.get("state"),
            code_challenge=q.get("code_challenge"),
            code_challenge_method=q.get("code_challenge_method"),
            scope=q.get("scope"),
            response_type=q.get("response_type"),
        )
        if isinstance(result, Err):
            return _error(result.error)
        return HTMLResponse(consent_page(result.value))

    async def _handle_submit(self, request: Request) -> Response:
        form = _parse_form(await request.body())
        if form.get("action") == "deny":
            denied = self.server.deny_consent(
                client_id=form.get("client_id"),
                redirect_uri=form.get("redirect_uri"),
                state=form.get("state"),
            )
            if isinstance(denied, Err):
                return _error(denied.error)
            return RedirectResponse(denied.value.location, status_code=302)

        result = self.server.submit_consent(
            client_id=form.get("client_id"),
            redirect_uri=form.get("redirect_uri"),
            state=form.get("state"),
            code_challenge=form.get("code_challenge"),
            code_challenge_method=form.get("code_challenge_method"),
            scope=form.get("scope"),
            presented_credential=form.get("token"),
        )
        if isinstance(result, Err):
            return _error(result.error)
        outcome = result.value
        if isinstance(outcome, Redirect):
            logger.info("consent approved, redirecting client %s", form.get("client_id"))
            return RedirectResponse(outcome.location, status_code=302)
        return HTMLResponse(consent_page(outcome))

    async def _handle_token(self, request: Request) -> Response:
        params = await _read_params(request)
        result = self.server.exchange_token(
            grant_type=_str_param(params, "grant_type"),
            code=_str_param(params, "code"),
            client_id=_str_param(params, "client_id"),
            code_verifier=_str_param(params, "code_verifier"),
            redirect_uri=_str_param(params, "redirect_uri"),
        )
        if isinstance(result, Err):
            return _error(result.error)
        return _json(200, result.value.model_dump(exclude_none=True))
