#!/usr/bin/env python3
"""
TastyTrade MCP: the /mcp endpoint behind an embedded OAuth 2.1 server.

Runs as an MCP server over stdio, or over streamable-http with the OAuth
endpoints from tasty_gateway in front of /mcp. No brokerage tools are
registered here; the HTTP app serves the gated /mcp endpoint and /health.

Environment:
  MCP_BEARER_TOKEN   operator secret: typed into the consent page, and
                     always accepted as a bearer token on /mcp
  MCP_TRANSPORT      "stdio" (default) or "http"
  PORT               HTTP port (default 5000)
  TASTY_ISSUER_URL   fixed public base URL; derived from request headers if unset
"""

import argparse
import logging
import os
from pathlib import Path

from mcp.server.fastmcp import FastMCP
from mcp.server.transport_security import TransportSecuritySettings
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.types import ASGIApp

from tasty_gateway import OAuthGateway
from tasty_oauth import AuthorizationServer

logger = logging.getLogger("tasty")

# ---------------------------------------------------------------------------
# Configuration: env vars
# ---------------------------------------------------------------------------
_BEARER_TOKEN = os.environ.get("MCP_BEARER_TOKEN") or None
_TRANSPORT = os.environ.get("MCP_TRANSPORT", "stdio")
_PORT = int(os.environ.get("PORT", "5000"))
_ISSUER_URL = os.environ.get("TASTY_ISSUER_URL") or None

AUDIT_LOG_PATH = Path.home() / ".tasty-mcp" / "audit.log"


# ---------------------------------------------------------------------------
# MCP Server
# ---------------------------------------------------------------------------

mcp = FastMCP(
    "tastytrade-mcp-server",
    instructions=(
        "TastyTrade MCP endpoint. Access is granted through the OAuth "
        "authorization code flow with PKCE."
    ),
    # Served behind a reverse proxy, so the Host header is the public domain.
    transport_security=TransportSecuritySettings(
        enable_dns_rebinding_protection=False,
    ),
)


@mcp.custom_route("/health", methods=["GET"])
async def _health_route(request: Request) -> Response:
    return JSONResponse({"status": "ok", "transport": "streamable-http", "oauth": True})


def build_app(bearer_token: str | None = _BEARER_TOKEN,
              issuer_url: str | None = _ISSUER_URL) -> ASGIApp:
    """Streamable-http MCP app wrapped in the OAuth gateway."""
    if not bearer_token:
        logger.warning("No MCP_BEARER_TOKEN set: consent will be refused and "
                       "only OAuth-issued tokens can reach /mcp")
    auth_server = AuthorizationServer(operator_secret=bearer_token)
    return OAuthGateway(mcp.streamable_http_app(), auth_server, issuer_url=issuer_url)


def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON-lines to ~/.tasty-mcp/audit.log
    AUDIT_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(AUDIT_LOG_PATH)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("tasty-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main() -> None:
    _configure_logging()

    default_transport = "streamable-http" if _TRANSPORT in ("http", "streamable-http") else "stdio"
    parser = argparse.ArgumentParser(description="TastyTrade MCP server")
    parser.add_argument("--transport", choices=["stdio", "streamable-http"],
                        default=default_transport)
    parser.add_argument("--port", type=int, default=_PORT)
    parser.add_argument("--host", default="0.0.0.0")
    args = parser.parse_args()

    if args.transport == "streamable-http":
        import uvicorn

        app = build_app()
        logger.info("tasty: starting HTTP server on %s:%d (OAuth 2.1 + PKCE + DCR)",
                    args.host, args.port)
        uvicorn.run(app, host=args.host, port=args.port, log_level="info",
                    proxy_headers=True, forwarded_allow_ips="*")
    else:
        mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
