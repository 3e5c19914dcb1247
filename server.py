"""
server.py: HTTP front end for the mcp-deploy authorization server.

Routes:
  GET     /.well-known/oauth-authorization-server  RFC 8414 metadata
  POST    /api/oauth/register                      RFC 7591 dynamic registration
  GET     /oauth/authorize                         consent page
  POST    /api/oauth/approve                       consent submission -> 303 to client
  POST    /api/oauth/token                         code + PKCE verifier -> access token
  OPTIONS /api/oauth/token                         CORS preflight

Run ``python server.py`` to serve, or ``python server.py --provision SLUG URL``
to mint a signing secret for a freshly deployed worker.
"""

import argparse
import asyncio
import html as html_mod
import json
import logging
import urllib.parse
from pathlib import Path
from typing import Any

from mcp.server.auth.provider import construct_redirect_uri
from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import HTMLResponse, JSONResponse, RedirectResponse, Response
from starlette.routing import Route
from starlette.types import ASGIApp, Receive, Scope, Send

from deploy_config import load_settings
from deploy_oauth import (
    APPROVE_PATH,
    AUTHORIZE_PATH,
    METADATA_PATH,
    REGISTER_PATH,
    TOKEN_PATH,
    DeployOAuthProvider,
    OAuthError,
)
from deploy_store import CredentialStore, SecretCipher, StoreError

logger = logging.getLogger("mcp-deploy-oauth")

METADATA_HEADERS = {
    "Cache-Control": "public, max-age=3600",
    "Access-Control-Allow-Origin": "*",
}
TOKEN_HEADERS = {
    "Cache-Control": "no-store",
    "Access-Control-Allow-Origin": "*",
}
TOKEN_PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization",
}
TOKEN_FIELDS = ("grant_type", "code", "redirect_uri", "client_id", "code_verifier")


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _parse_qs(query: str) -> dict[str, str]:
    """Parse query string, returning first value for each key."""
    parsed = urllib.parse.parse_qs(query, keep_blank_values=True)
    return {k: v[0] for k, v in parsed.items()}


def _parse_form(body: bytes) -> dict[str, str]:
    """Parse application/x-www-form-urlencoded body."""
    return _parse_qs(body.decode("utf-8"))


def _provider(request: Request) -> DeployOAuthProvider:
    return request.app.state.provider


def _server_error(headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(
        {"error": "server_error", "error_description": "Internal server error"},
        status_code=500, headers=headers,
    )


def _resource_name(resource: str) -> str:
    """Readable name for the consent page, e.g. 'my-mcp' for a workers.dev URL."""
    host = urllib.parse.urlsplit(resource).hostname if resource else None
    if not host:
        return "an MCP server"
    return host.removesuffix(".workers.dev")


# ---------------------------------------------------------------------------
# Consent page HTML
# ---------------------------------------------------------------------------

_PAGE_STYLE = """
        body {
            font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', sans-serif;
            background: #0a0a1a; color: #e0e0e0;
            display: flex; justify-content: center; align-items: center;
            min-height: 100vh; margin: 0;
        }
        .card {
            background: #1a1a2e; border: 1px solid #2a2a4a;
            border-radius: 12px; padding: 2rem; max-width: 400px;
            width: 90%; box-shadow: 0 4px 24px rgba(0, 0, 0, 0.5);
        }
        h1 { font-size: 1.3rem; margin: 0 0 0.5rem 0; color: #00d4ff; }
        .resource { color: #ff6b9d; font-family: monospace; }
        .perms {
            background: #12122a; border: 1px solid #2a2a4a; border-radius: 8px;
            padding: 1rem; margin: 1rem 0; font-size: 0.9rem;
        }
        .error {
            background: #2a1218; border: 1px solid #ff4444; border-radius: 8px;
            padding: 0.75rem; margin: 1rem 0; color: #ff4444; font-size: 0.9rem;
        }
        .password-field { margin: 1rem 0 0.5rem 0; }
        .password-field label { font-size: 0.9rem; color: #aaa; }
        .password-field input {
            width: 100%; padding: 0.6rem; border: 1px solid #2a2a4a;
            border-radius: 6px; background: #12122a; color: #e0e0e0;
            font-size: 1rem; margin-top: 0.4rem; box-sizing: border-box;
        }
        .buttons { display: flex; gap: 1rem; margin-top: 1.5rem; }
        .buttons > * {
            flex: 1; padding: 0.75rem; border: none; border-radius: 8px;
            font-size: 1rem; cursor: pointer; font-weight: 600;
            text-align: center; text-decoration: none;
        }
        .approve { background: #00d4ff; color: #0a0a1a; }
        .deny { background: #2a2a4a; color: #e0e0e0; }
        .footer { font-size: 0.75rem; color: #666; text-align: center; margin-top: 1.5rem; }
"""

_HIDDEN_FIELDS = ("client_id", "redirect_uri", "response_type", "code_challenge",
                  "code_challenge_method", "scope", "state", "resource")


def _page(title: str, body: str) -> str:
    return f"""<!DOCTYPE html>
<html>
<head>
    <title>mcp-deploy: {html_mod.escape(title)}</title>
    <meta name="viewport" content="width=device-width, initial-scale=1">
    <style>{_PAGE_STYLE}</style>
</head>
<body>
    <div class="card">
{body}
        <p class="footer">Powered by mcp-deploy</p>
    </div>
</body>
</html>"""


def _authorize_page(params: dict[str, str], deny_url: str | None,
                    password_required: bool, invalid_password: bool) -> str:
    hidden = "\n".join(
        f'            <input type="hidden" name="{name}" value="{html_mod.escape(params[name], quote=True)}">'
        for name in _HIDDEN_FIELDS
    )
    deny_link = ""
    if deny_url:
        deny_link = f"""
                <a class="deny" href="{html_mod.escape(deny_url, quote=True)}">Deny</a>"""
    password_block = ""
    if password_required:
        password_block = """
            <div class="password-field">
                <label for="password">Authorization password</label>
                <input type="password" id="password" name="password"
                       autocomplete="current-password" placeholder="Enter your deploy password">
            </div>"""
    error_block = ""
    if invalid_password:
        error_block = """
            <div class="error">Incorrect password. Please try again.</div>"""

    return _page("Authorize", f"""
        <h1>Authorize MCP Access</h1>
        <p>An application is requesting access to:
           <span class="resource">{html_mod.escape(_resource_name(params["resource"]))}</span></p>
        <div class="perms">
            <strong>Requested permissions:</strong>
            <ul><li>Access MCP tools and resources</li></ul>
        </div>
        <form method="POST" action="{APPROVE_PATH}">
{hidden}{password_block}{error_block}
            <div class="buttons">
                <button type="submit" class="approve">Authorize</button>{deny_link}
            </div>
        </form>""")


def _invalid_request_page() -> str:
    return _page("Invalid request", """
        <h1>Authorize MCP Access</h1>
        <div class="error">Invalid authorization request. Missing required parameters.</div>""")


def _error_page() -> str:
    return _page("Error", """
        <h1>Authorize MCP Access</h1>
        <div class="error">Something went wrong. Please try again.</div>""")


# ---------------------------------------------------------------------------
# Endpoint handlers
# ---------------------------------------------------------------------------

async def metadata_endpoint(request: Request) -> Response:
    return JSONResponse(_provider(request).metadata(), headers=METADATA_HEADERS)


async def register_endpoint(request: Request) -> Response:
    try:
        data = json.loads(await request.body())
    except (ValueError, UnicodeDecodeError):
        return JSONResponse(
            {"error": "invalid_request", "error_description": "Invalid JSON body"},
            status_code=400,
        )

    result = await _provider(request).register_client(data)
    if isinstance(result, OAuthError):
        return JSONResponse(result.to_dict(), status_code=result.status_code)
    return JSONResponse(result.to_dict(), status_code=201)


async def authorize_endpoint(request: Request) -> Response:
    qs = request.query_params
    params = {name: qs.get(name, "") for name in _HIDDEN_FIELDS}
    params["scope"] = qs.get("scope", "mcp")

    if not params["client_id"] or not params["redirect_uri"] or not params["code_challenge"]:
        return HTMLResponse(_invalid_request_page(), status_code=400)

    try:
        urllib.parse.urlsplit(params["redirect_uri"])
    except ValueError:
        return HTMLResponse(_invalid_request_page(), status_code=400)

    provider = _provider(request)
    try:
        deny_allowed = await provider.consent_deny_allowed(
            params["client_id"], params["redirect_uri"])
    except StoreError:
        logger.exception("authorize: credential store error")
        return HTMLResponse(_error_page(), status_code=500)

    deny_url = None
    if deny_allowed:
        deny_url = construct_redirect_uri(
            params["redirect_uri"],
            error="access_denied",
            error_description="User denied access",
            state=params["state"] or None,
        )

    return HTMLResponse(_authorize_page(
        params,
        deny_url,
        password_required=bool(provider.settings.oauth_password),
        invalid_password=qs.get("error") == "invalid_password",
    ))


async def approve_endpoint(request: Request) -> Response:
    try:
        form = _parse_form(await request.body())
        result = await _provider(request).approve(form)
    except Exception:
        logger.exception("approve: unexpected error")
        return _server_error()

    if result.error is not None:
        return JSONResponse(result.error.to_dict(), status_code=result.error.status_code)
    if result.retry_url is not None:
        return RedirectResponse(result.retry_url, status_code=303)
    logger.info("approve: redirecting to client")
    return RedirectResponse(result.redirect_url, status_code=303)


async def _read_token_params(request: Request) -> dict[str, Any]:
    content_type = request.headers.get("content-type", "")
    body = await request.body()
    if "application/json" in content_type:
        params = json.loads(body)
        if not isinstance(params, dict):
            raise ValueError("token request body must be a JSON object")
        return params
    # Form encoding is the OAuth default, so it is also the fallback.
    return _parse_form(body)


async def token_endpoint(request: Request) -> Response:
    if request.method == "OPTIONS":
        return Response(status_code=204, headers=TOKEN_PREFLIGHT_HEADERS)

    try:
        params = await _read_token_params(request)
        fields = {name: str(params.get(name) or "") for name in TOKEN_FIELDS}
        result = await _provider(request).exchange_authorization_code(**fields)
    except Exception:
        logger.exception("token: unexpected error")
        return _server_error(TOKEN_HEADERS)

    if isinstance(result, OAuthError):
        return JSONResponse(result.to_dict(), status_code=result.status_code,
                            headers=TOKEN_HEADERS)
    return JSONResponse(result.to_dict(), headers=TOKEN_HEADERS)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

class _RequestLogMiddleware:
    """Log method and path of each request. Headers and bodies are not logged."""

    def __init__(self, inner: ASGIApp):
        self.inner = inner

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] == "http":
            hdrs = dict(scope.get("headers", []))
            ua = hdrs.get(b"user-agent", b"").decode(errors="replace")
            logger.info("recv: %s %s ua=%s", scope.get("method", "?"),
                        scope.get("path", "?"), ua[:60])
        await self.inner(scope, receive, send)


def create_app(provider: DeployOAuthProvider) -> Starlette:
    app = Starlette(routes=[
        Route(METADATA_PATH, metadata_endpoint, methods=["GET"]),
        Route(REGISTER_PATH, register_endpoint, methods=["POST"]),
        Route(AUTHORIZE_PATH, authorize_endpoint, methods=["GET"]),
        Route(APPROVE_PATH, approve_endpoint, methods=["POST"]),
        Route(TOKEN_PATH, token_endpoint, methods=["POST", "OPTIONS"]),
    ])
    app.state.provider = provider
    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _configure_logging() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON-lines to ~/.mcp-deploy/audit.log
    audit_log_path = Path.home() / ".mcp-deploy" / "audit.log"
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("mcp-deploy-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


def main() -> None:
    _configure_logging()

    parser = argparse.ArgumentParser(description="mcp-deploy OAuth authorization server")
    parser.add_argument("--port", type=int, default=3000)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--config", type=Path, default=None,
                        help="YAML settings file (default: $MCP_DEPLOY_CONFIG)")
    parser.add_argument("--provision", nargs=2, metavar=("SLUG", "WORKER_URL"),
                        help="mint a signing secret for a deployment and print it")
    args = parser.parse_args()

    settings = load_settings(config_path=args.config)
    store = CredentialStore(settings.database_path, SecretCipher(settings.encryption_key))
    provider = DeployOAuthProvider(settings, store)

    try:
        if args.provision:
            slug, worker_url = args.provision
            print(asyncio.run(provider.provision_deployment(slug, worker_url)))
            return

        import uvicorn

        app = _RequestLogMiddleware(create_app(provider))
        logger.info("mcp-deploy-oauth: issuer %s, serving on %s:%d",
                    settings.issuer_url, args.host, args.port)
        config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info",
                                proxy_headers=True, forwarded_allow_ips="*")
        asyncio.run(uvicorn.Server(config).serve())
    finally:
        store.close()


if __name__ == "__main__":
    main()
