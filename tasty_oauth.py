"""
tasty_oauth.py: embedded OAuth 2.1 authorization server for TastyTrade MCP.

Authorization Code + PKCE (S256 only) with dynamic client registration.
Callers of the /mcp endpoint present the opaque bearer tokens minted here.

Implements:
  RFC 8414  authorization server metadata
  RFC 9728  protected resource metadata
  RFC 7591  dynamic client registration
  RFC 7636  PKCE (plain method rejected)

Pieces:
  ClientRegistry       registered clients, kept for the process lifetime
  GrantStore           one-time authorization codes, 10 minute TTL
  TokenStore           bearer access tokens, 24 hour TTL
  AuthorizationServer  the protocol steps, composed over the three stores

All state is in-memory. Each store serializes its own operations with a
lock, so a code can be redeemed at most once even if exchanges race.
Expiry is checked against the wall clock on lookup; purge_expired()
sweeps whatever was never looked up again.
"""

import base64
import hashlib
import hmac
import json
import logging
import secrets
import threading
import time
import urllib.parse
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Generic, TypeVar

from mcp.shared.auth import OAuthToken

logger = logging.getLogger("tasty-oauth")
audit_logger = logging.getLogger("tasty-audit")

AUTH_CODE_TTL = 600  # 10 minutes
ACCESS_TOKEN_TTL = 24 * 3600  # 24 hours

DEFAULT_SCOPE = "mcp:tools"
DEFAULT_CLIENT_NAME = "MCP Client"
MAX_CLIENT_NAME_LENGTH = 256
MAX_REGISTERED_CLIENTS = 100
PKCE_METHOD = "S256"

Clock = Callable[[], float]


def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Results and errors
# ---------------------------------------------------------------------------

T = TypeVar("T")
E = TypeVar("E")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err(Generic[E]):
    error: E


Result = Ok[T] | Err[E]


@dataclass(frozen=True)
class OAuthError:
    """An error from the RFC 6749 vocabulary, ready for the wire."""

    error: str
    description: str | None = None
    status_code: int = 400

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error}
        if self.description:
            body["error_description"] = self.description
        return body


@dataclass(frozen=True)
class RegistrationError:
    description: str
    error: str = "invalid_client_metadata"
    status_code: int = 400

    def to_oauth_error(self) -> OAuthError:
        return OAuthError(self.error, self.description, self.status_code)


class ExchangeFailure(Enum):
    """Why a code exchange failed. Audit-only; the wire just says invalid_grant."""

    NOT_FOUND = "not_found"
    EXPIRED = "expired"
    CLIENT_MISMATCH = "client_mismatch"
    REDIRECT_MISMATCH = "redirect_mismatch"
    CHALLENGE_MISMATCH = "challenge_mismatch"


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------

def _utf8(value: str) -> bytes:
    # surrogatepass: malformed input still hashes, it just never matches
    return value.encode("utf-8", errors="surrogatepass")


def pkce_challenge(verifier: str) -> str:
    """BASE64URL(SHA256(verifier)) without padding (RFC 7636 section 4.2)."""
    digest = hashlib.sha256(_utf8(verifier)).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def constant_time_equals(a: str, b: str) -> bool:
    return hmac.compare_digest(_utf8(a), _utf8(b))


# ---------------------------------------------------------------------------
# Redirects
# ---------------------------------------------------------------------------

def redirect_with_params(redirect_uri: str, **params: str | None) -> str:
    """Set query parameters on a registered redirect URI.

    Existing parameters are kept byte for byte, blank and valueless ones
    included. A parameter being set replaces any existing one of the same
    name. ``None`` values are skipped.
    """
    new = {k: v for k, v in params.items() if v is not None}
    parts = urllib.parse.urlsplit(redirect_uri)
    kept = [
        segment for segment in parts.query.split("&")
        if segment and urllib.parse.unquote_plus(segment.split("=", 1)[0]) not in new
    ]
    if new:
        kept.append(urllib.parse.urlencode(new))
    return urllib.parse.urlunsplit(parts._replace(query="&".join(kept)))


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Client:
    client_id: str
    redirect_uris: tuple[str, ...]
    client_name: str = DEFAULT_CLIENT_NAME
    grant_types: tuple[str, ...] = ("authorization_code",)
    response_types: tuple[str, ...] = ("code",)
    token_endpoint_auth_method: str = "none"
    created_at: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        """RFC 7591 client information response."""
        return {
            "client_id": self.client_id,
            "client_id_issued_at": int(self.created_at),
            "client_name": self.client_name,
            "redirect_uris": list(self.redirect_uris),
            "grant_types": list(self.grant_types),
            "response_types": list(self.response_types),
            "token_endpoint_auth_method": self.token_endpoint_auth_method,
        }


@dataclass(frozen=True)
class AuthorizationGrant:
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    scope: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at < now


@dataclass(frozen=True)
class AccessToken:
    token: str
    client_id: str
    scope: str
    expires_at: float

    def is_expired(self, now: float) -> bool:
        return self.expires_at < now


# ---------------------------------------------------------------------------
# Client registry
# ---------------------------------------------------------------------------

def is_absolute_uri(uri: Any) -> bool:
    """True for a string with a scheme and something after it."""
    if not isinstance(uri, str) or not uri:
        return False
    if any(ch.isspace() for ch in uri):
        return False
    try:
        parsed = urllib.parse.urlsplit(uri)
        parsed.port  # raises on a malformed port
    except ValueError:
        return False
    return bool(parsed.scheme) and bool(parsed.netloc or parsed.path)


def _is_string_list(value: Any) -> bool:
    return isinstance(value, list) and all(isinstance(v, str) for v in value)


def _check_client_metadata(metadata: Any) -> str | None:
    """Return a description of the first problem, or None if acceptable."""
    if not isinstance(metadata, dict):
        return "Client metadata must be a JSON object"

    redirect_uris = metadata.get("redirect_uris")
    if not isinstance(redirect_uris, list) or not redirect_uris:
        return "redirect_uris is required and must contain at least one URI"
    for uri in redirect_uris:
        if not is_absolute_uri(uri):
            return f"Invalid redirect URI: {uri}"

    client_name = metadata.get("client_name")
    if client_name is not None:
        if not isinstance(client_name, str):
            return "client_name must be a string"
        if len(client_name) > MAX_CLIENT_NAME_LENGTH:
            return f"client_name exceeds {MAX_CLIENT_NAME_LENGTH} characters"

    for key in ("grant_types", "response_types"):
        value = metadata.get(key)
        if value is not None and not _is_string_list(value):
            return f"{key} must be a list of strings"

    auth_method = metadata.get("token_endpoint_auth_method")
    if auth_method is not None and not isinstance(auth_method, str):
        return "token_endpoint_auth_method must be a string"
    return None


class ClientRegistry:
    """Dynamically registered OAuth clients (RFC 7591)."""

    def __init__(self, clock: Clock = time.time, max_clients: int = MAX_REGISTERED_CLIENTS):
        self._clock = clock
        self._max_clients = max_clients
        self._clients: dict[str, Client] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._clients)

    def register(self, metadata: dict[str, Any]) -> Result[Client, RegistrationError]:
        problem = _check_client_metadata(metadata)
        if problem:
            return Err(RegistrationError(problem))

        client = Client(
            client_id=f"tasty-{secrets.token_hex(16)}",
            redirect_uris=tuple(metadata["redirect_uris"]),
            client_name=metadata.get("client_name") or DEFAULT_CLIENT_NAME,
            grant_types=tuple(metadata.get("grant_types") or ("authorization_code",)),
            response_types=tuple(metadata.get("response_types") or ("code",)),
            token_endpoint_auth_method=metadata.get("token_endpoint_auth_method") or "none",
            created_at=self._clock(),
        )
        with self._lock:
            if len(self._clients) >= self._max_clients:
                return Err(RegistrationError(
                    f"Maximum {self._max_clients} clients",
                    error="client_limit_reached",
                    status_code=403,
                ))
            self._clients[client.client_id] = client
        return Ok(client)

    def lookup(self, client_id: str) -> Client | None:
        with self._lock:
            return self._clients.get(client_id)

    def is_redirect_registered(self, client: Client, redirect_uri: str) -> bool:
        # Exact string match only. No normalization, prefixes or wildcards.
        return redirect_uri in client.redirect_uris


# ---------------------------------------------------------------------------
# Authorization codes
# ---------------------------------------------------------------------------

class GrantStore:
    """One-time authorization codes bound to client, redirect and challenge.

    A code is deleted on successful exchange and on detected expiry. With
    ``burn_on_verifier_mismatch`` (the default) a wrong PKCE verifier also
    deletes it, so one code allows a single verifier attempt. Client and
    redirect mismatches leave the code in place for the rightful holder.
    """

    def __init__(self, ttl: int = AUTH_CODE_TTL, clock: Clock = time.time,
                 burn_on_verifier_mismatch: bool = True):
        self.ttl = ttl
        self.burn_on_verifier_mismatch = burn_on_verifier_mismatch
        self._clock = clock
        self._grants: dict[str, AuthorizationGrant] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._grants)

    def __contains__(self, code: object) -> bool:
        return code in self._grants

    def issue(self, client_id: str, redirect_uri: str, code_challenge: str,
              code_challenge_method: str, scope: str) -> str:
        code = secrets.token_urlsafe(32)
        grant = AuthorizationGrant(
            code=code,
            client_id=client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
            scope=scope,
            expires_at=self._clock() + self.ttl,
        )
        with self._lock:
            self._grants[code] = grant
        return code

    def consume(self, code: str, client_id: str, redirect_uri: str,
                code_verifier: str) -> Result[AuthorizationGrant, ExchangeFailure]:
        with self._lock:
            grant = self._grants.get(code)
            if grant is None:
                return Err(ExchangeFailure.NOT_FOUND)
            if grant.is_expired(self._clock()):
                del self._grants[code]
                return Err(ExchangeFailure.EXPIRED)
            if not constant_time_equals(grant.client_id, client_id):
                return Err(ExchangeFailure.CLIENT_MISMATCH)
            if grant.redirect_uri != redirect_uri:
                return Err(ExchangeFailure.REDIRECT_MISMATCH)
            if not constant_time_equals(pkce_challenge(code_verifier), grant.code_challenge):
                if self.burn_on_verifier_mismatch:
                    del self._grants[code]
                return Err(ExchangeFailure.CHALLENGE_MISMATCH)
            # Delete before returning so a concurrent replay sees NOT_FOUND.
            del self._grants[code]
        return Ok(grant)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [c for c, g in self._grants.items() if g.is_expired(now)]
            for c in expired:
                del self._grants[c]
        return len(expired)


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------

class TokenStore:
    """Opaque bearer access tokens."""

    def __init__(self, ttl: int = ACCESS_TOKEN_TTL, clock: Clock = time.time):
        self.ttl = ttl
        self._clock = clock
        self._tokens: dict[str, AccessToken] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._tokens)

    def __contains__(self, token: object) -> bool:
        return token in self._tokens

    def issue(self, client_id: str, scope: str) -> AccessToken:
        token = AccessToken(
            token=secrets.token_urlsafe(32),
            client_id=client_id,
            scope=scope,
            expires_at=self._clock() + self.ttl,
        )
        with self._lock:
            self._tokens[token.token] = token
        return token

    def validate(self, token: str) -> AccessToken | None:
        with self._lock:
            at = self._tokens.get(token)
            if at is None:
                return None
            if at.is_expired(self._clock()):
                del self._tokens[token]
                return None
            return at

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            expired = [t for t, at in self._tokens.items() if at.is_expired(now)]
            for t in expired:
                del self._tokens[t]
        return len(expired)


# ---------------------------------------------------------------------------
# Authorization server
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ConsentPrompt:
    """What the consent page needs, including the hidden round-trip fields."""

    client_id: str
    client_name: str
    redirect_uri: str
    state: str
    code_challenge: str
    code_challenge_method: str
    scope: str
    error: str | None = None


@dataclass(frozen=True)
class Redirect:
    location: str


class AuthorizationServer:
    """Registration, authorization and token exchange over injected stores.

    ``operator_secret`` is the single shared credential the resource owner
    types into the consent form. Without it every consent submission is
    rejected.
    """

    def __init__(self, operator_secret: str | None,
                 clients: ClientRegistry | None = None,
                 grants: GrantStore | None = None,
                 tokens: TokenStore | None = None):
        self.operator_secret = operator_secret or None
        self.clients = clients if clients is not None else ClientRegistry()
        self.grants = grants if grants is not None else GrantStore()
        self.tokens = tokens if tokens is not None else TokenStore()

    # --- Discovery ---

    @staticmethod
    def metadata(issuer_url: str) -> dict[str, Any]:
        """RFC 8414 authorization server metadata."""
        issuer = issuer_url.rstrip("/")
        return {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}/oauth/authorize",
            "token_endpoint": f"{issuer}/oauth/token",
            "registration_endpoint": f"{issuer}/oauth/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "code_challenge_methods_supported": [PKCE_METHOD],
            "token_endpoint_auth_methods_supported": ["none"],
            "scopes_supported": [DEFAULT_SCOPE],
        }

    @staticmethod
    def protected_resource_metadata(resource_url: str,
                                    authorization_server_url: str) -> dict[str, Any]:
        """RFC 9728 protected resource metadata."""
        return {
            "resource": resource_url,
            "authorization_servers": [authorization_server_url],
            "bearer_methods_supported": ["header"],
            "scopes_supported": [DEFAULT_SCOPE],
        }

    # --- Registration ---

    def register(self, metadata: dict[str, Any]) -> Result[Client, RegistrationError]:
        result = self.clients.register(metadata)
        if isinstance(result, Err):
            _audit("register_rejected", reason=result.error.description)
            return result
        client = result.value
        _audit("client_registered", client_id=client.client_id,
               client_name=client.client_name)
        logger.info("client_registered: %s (%s)", client.client_id, client.client_name)
        return result

    # --- Authorization ---

    def _check_client_redirect(self, client_id: str | None,
                               redirect_uri: str | None) -> Result[Client, OAuthError]:
        client = self.clients.lookup(client_id) if client_id else None
        if client is None:
            return Err(OAuthError("invalid_client", "Unknown client_id. Register first."))
        if not redirect_uri or not self.clients.is_redirect_registered(client, redirect_uri):
            return Err(OAuthError("invalid_request",
                                  "redirect_uri not registered for this client"))
        return Ok(client)

    def _check_request(self, client_id: str | None, redirect_uri: str | None,
                       code_challenge: str | None,
                       code_challenge_method: str | None) -> Result[Client, OAuthError]:
        if not client_id or not redirect_uri or not code_challenge:
            return Err(OAuthError("invalid_request", "Missing required parameters"))
        if code_challenge_method and code_challenge_method != PKCE_METHOD:
            return Err(OAuthError("invalid_request",
                                  "Only S256 code_challenge_method is supported"))
        return self._check_client_redirect(client_id, redirect_uri)

    def _prompt(self, client: Client, redirect_uri: str, state: str | None,
                code_challenge: str, code_challenge_method: str | None,
                scope: str | None, error: str | None = None) -> ConsentPrompt:
        return ConsentPrompt(
            client_id=client.client_id,
            client_name=client.client_name,
            redirect_uri=redirect_uri,
            state=state or "",
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method or PKCE_METHOD,
            scope=scope or DEFAULT_SCOPE,
            error=error,
        )

    def begin_authorization(self, client_id: str | None, redirect_uri: str | None,
                            state: str | None, code_challenge: str | None,
                            code_challenge_method: str | None, scope: str | None,
                            response_type: str | None) -> Result[ConsentPrompt, OAuthError]:
        if response_type != "code":
            return Err(OAuthError("unsupported_response_type"))
        checked = self._check_request(client_id, redirect_uri, code_challenge,
                                      code_challenge_method)
        if isinstance(checked, Err):
            _audit("authorize_rejected", client_id=client_id, reason=checked.error.error)
            return checked
        return Ok(self._prompt(checked.value, redirect_uri, state, code_challenge,
                               code_challenge_method, scope))

    def submit_consent(self, client_id: str | None, redirect_uri: str | None,
                       state: str | None, code_challenge: str | None,
                       code_challenge_method: str | None, scope: str | None,
                       presented_credential: str | None,
                       ) -> Result[Redirect | ConsentPrompt, OAuthError]:
        # Hidden form fields come back from the browser; trust none of them.
        checked = self._check_request(client_id, redirect_uri, code_challenge,
                                      code_challenge_method)
        if isinstance(checked, Err):
            _audit("authorize_rejected", client_id=client_id, reason=checked.error.error)
            return checked
        client = checked.value

        if not self.operator_secret or not constant_time_equals(
                presented_credential or "", self.operator_secret):
            if not self.operator_secret:
                logger.warning("consent rejected: no operator bearer secret configured")
            _audit("consent_rejected", client_id=client.client_id)
            return Ok(self._prompt(client, redirect_uri, state, code_challenge,
                                   code_challenge_method, scope, error="Invalid token"))

        code = self.grants.issue(
            client_id=client.client_id,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method or PKCE_METHOD,
            scope=scope or DEFAULT_SCOPE,
        )
        _audit("authorize_approved", client_id=client.client_id)
        return Ok(Redirect(redirect_with_params(redirect_uri, code=code,
                                                state=state or None)))

    def deny_consent(self, client_id: str | None, redirect_uri: str | None,
                     state: str | None) -> Result[Redirect, OAuthError]:
        checked = self._check_client_redirect(client_id, redirect_uri)
        if isinstance(checked, Err):
            return checked
        _audit("authorize_denied", client_id=client_id)
        return Ok(Redirect(redirect_with_params(
            redirect_uri,
            error="access_denied",
            error_description="User denied authorization",
            state=state or None,
        )))

    # --- Token exchange ---

    def exchange_token(self, grant_type: str | None, code: str | None,
                       client_id: str | None, code_verifier: str | None,
                       redirect_uri: str | None) -> Result[OAuthToken, OAuthError]:
        if grant_type != "authorization_code":
            return Err(OAuthError("unsupported_grant_type"))
        if not code or not client_id or not code_verifier or not redirect_uri:
            return Err(OAuthError("invalid_request", "Missing required parameters"))

        consumed = self.grants.consume(code, client_id, redirect_uri, code_verifier)
        if isinstance(consumed, Err):
            _audit("token_rejected", client_id=client_id, reason=consumed.error.value)
            return Err(OAuthError("invalid_grant"))

        grant = consumed.value
        token = self.tokens.issue(grant.client_id, grant.scope)
        _audit("token_issued", client_id=grant.client_id, expires_in=self.tokens.ttl)
        logger.info("token_issued: client=%s stored=%d", grant.client_id, len(self.tokens))
        return Ok(OAuthToken(
            access_token=token.token,
            token_type="Bearer",
            expires_in=self.tokens.ttl,
            scope=token.scope,
        ))

    # --- Resource boundary ---

    def validate_bearer(self, token: str) -> AccessToken | None:
        return self.tokens.validate(token) if token else None

    def purge_expired(self) -> None:
        codes = self.grants.purge_expired()
        tokens = self.tokens.purge_expired()
        if codes or tokens:
            logger.info("purged %d expired codes, %d expired tokens", codes, tokens)
