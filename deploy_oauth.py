"""
deploy_oauth.py: OAuth 2.1 authorization server for mcp-deploy.

Issues access tokens for MCP servers deployed as Cloudflare Workers. Each
token is an HS256 JWT signed with the target deployment's own secret and
bound to it through the ``aud`` claim.

Implements:
  - RFC 8414 authorization server metadata
  - RFC 7591 dynamic client registration
  - Authorization code flow, PKCE mandatory (S256 only)
  - RFC 8707 resource indicators (the code's ``resource`` becomes ``aud``)

Single-user system: consent is optionally gated by a shared password and
every token has the same subject. No refresh tokens, no revocation.

Protocol failures are returned as OAuthError values. Only StoreError
crosses into this module, and it is turned into a generic server_error.
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Mapping
from urllib.parse import urlencode, urlsplit

from mcp.server.auth.provider import construct_redirect_uri

from deploy_config import OAuthSettings
from deploy_store import (
    AUTH_CODE_TTL,
    AuthorizationCode,
    CredentialStore,
    OAuthClient,
    StoreError,
)
from deploy_tokens import (
    generate_signing_secret,
    generate_token_id,
    sign_token,
    verify_token,
)

logger = logging.getLogger("mcp-deploy-oauth")
audit_logger = logging.getLogger("mcp-deploy-audit")

ACCESS_TOKEN_TTL = 3600  # 1 hour
TOKEN_SUBJECT = "mcp-user"
DEFAULT_SCOPE = "mcp"

AUTHORIZE_PATH = "/oauth/authorize"
APPROVE_PATH = "/api/oauth/approve"
TOKEN_PATH = "/api/oauth/token"
REGISTER_PATH = "/api/oauth/register"
METADATA_PATH = "/.well-known/oauth-authorization-server"


def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


# ---------------------------------------------------------------------------
# Values
# ---------------------------------------------------------------------------

@dataclass
class OAuthError:
    error: str
    error_description: str = ""
    status_code: int = field(default=400, compare=False)

    def to_dict(self) -> dict[str, str]:
        return {"error": self.error, "error_description": self.error_description}


def _server_error() -> OAuthError:
    return OAuthError("server_error", "Internal server error", status_code=500)


@dataclass
class AuthorizeParams:
    client_id: str
    redirect_uri: str
    response_type: str
    code_challenge: str
    code_challenge_method: str
    scope: str = DEFAULT_SCOPE
    state: str = ""
    resource: str = ""


@dataclass
class TokenResponse:
    access_token: str
    expires_in: int
    scope: str
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "scope": self.scope,
        }


@dataclass
class ApprovalResult:
    """Outcome of a consent submission; exactly one field is set."""
    redirect_url: str | None = None  # back to the client, carrying the code
    retry_url: str | None = None  # back to the consent page (wrong password)
    error: OAuthError | None = None


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def validate_authorize_params(params: Mapping[str, str | None]) -> AuthorizeParams | OAuthError:
    """Check an authorization request. Pure: does not look up the client."""
    client_id = params.get("client_id")
    redirect_uri = params.get("redirect_uri")
    response_type = params.get("response_type")
    code_challenge = params.get("code_challenge")
    code_challenge_method = params.get("code_challenge_method")

    if not client_id:
        return OAuthError("invalid_request", "client_id required")
    if not redirect_uri:
        return OAuthError("invalid_request", "redirect_uri required")
    if response_type != "code":
        return OAuthError("unsupported_response_type",
                          "Only 'code' response_type is supported")
    if not code_challenge:
        return OAuthError("invalid_request",
                          "code_challenge required (PKCE is mandatory)")
    if code_challenge_method != "S256":
        return OAuthError("invalid_request",
                          "Only S256 code_challenge_method is supported")

    scope = params.get("scope")
    return AuthorizeParams(
        client_id=client_id,
        redirect_uri=redirect_uri,
        response_type=response_type,
        code_challenge=code_challenge,
        code_challenge_method=code_challenge_method,
        scope=DEFAULT_SCOPE if scope is None else scope,
        state=params.get("state") or "",
        resource=params.get("resource") or "",
    )


def constant_time_compare(provided: str, expected: str) -> bool:
    a = provided.encode("utf-8")
    b = expected.encode("utf-8")
    if len(a) != len(b):
        # Same work as a real comparison so the length does not leak.
        hmac.compare_digest(a, a)
        return False
    return hmac.compare_digest(a, b)


def pkce_challenge(verifier: str) -> str:
    """S256: base64url(sha256(verifier)) without padding."""
    digest = hashlib.sha256(verifier.encode("utf-8")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def resource_aliases(worker_url: str) -> list[str]:
    """Every URL form a deployed worker may be named by in ``resource``."""
    base = worker_url.rstrip("/")
    if base.endswith("/mcp"):
        base = base[: -len("/mcp")]
    parts = urlsplit(base)
    origin = f"{parts.scheme}://{parts.netloc}" if parts.scheme and parts.netloc else base

    aliases: list[str] = []
    for url in (worker_url, base, f"{base}/mcp", origin, f"{origin}/mcp"):
        if url and url not in aliases:
            aliases.append(url)
    return aliases


def is_web_url(url: str) -> bool:
    """True for a parseable http(s) URL with a host."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.netloc)


def _utf8_encodable(value: str) -> bool:
    try:
        value.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True


# ---------------------------------------------------------------------------
# Provider
# ---------------------------------------------------------------------------

class DeployOAuthProvider:
    """Authorization server for all deployments of one mcp-deploy instance.

    The store is blocking sqlite3, so coroutine methods run their store work
    in a worker thread via ``asyncio.to_thread``.
    """

    def __init__(self, settings: OAuthSettings, store: CredentialStore,
                 clock: Callable[[], float] = time.time):
        self.settings = settings
        self.store = store
        self.clock = clock

    @property
    def issuer_url(self) -> str:
        return self.settings.issuer_url

    def _now(self) -> int:
        return int(self.clock())

    # --- Discovery ---

    def metadata(self) -> dict[str, Any]:
        """RFC 8414 authorization server metadata."""
        issuer = self.issuer_url
        return {
            "issuer": issuer,
            "authorization_endpoint": f"{issuer}{AUTHORIZE_PATH}",
            "token_endpoint": f"{issuer}{TOKEN_PATH}",
            "registration_endpoint": f"{issuer}{REGISTER_PATH}",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["client_secret_post", "none"],
            "scopes_supported": [DEFAULT_SCOPE],
            "service_documentation": issuer,
        }

    # --- Dynamic client registration ---

    async def register_client(self, metadata: Any) -> OAuthClient | OAuthError:
        """RFC 7591. The returned record is the only time the secret is shown."""
        if not isinstance(metadata, Mapping):
            return OAuthError("invalid_client_metadata", "redirect_uris is required")
        redirect_uris = metadata.get("redirect_uris")
        if (not isinstance(redirect_uris, list) or not redirect_uris
                or not all(isinstance(u, str) for u in redirect_uris)):
            return OAuthError("invalid_client_metadata", "redirect_uris is required")

        def pick(key: str, default: Any) -> Any:
            value = metadata.get(key)
            return default if value is None else value

        client = OAuthClient(
            client_id=secrets.token_hex(16),
            client_secret=secrets.token_hex(32),
            client_name=pick("client_name", "Unknown Client"),
            redirect_uris=list(redirect_uris),
            grant_types=pick("grant_types", ["authorization_code"]),
            response_types=pick("response_types", ["code"]),
            scope=pick("scope", DEFAULT_SCOPE),
            token_endpoint_auth_method=pick("token_endpoint_auth_method", "client_secret_post"),
            created_at=self._now(),
        )
        try:
            await asyncio.to_thread(self.store.put_client, client)
        except StoreError:
            logger.exception("register_client: credential store error")
            return _server_error()

        _audit("client_registered", client_id=client.client_id,
               client_name=client.client_name)
        return client

    # --- Consent ---

    def _retry_url(self, form: Mapping[str, str]) -> str:
        query = {
            "client_id": form.get("client_id") or "",
            "redirect_uri": form.get("redirect_uri") or "",
            "response_type": form.get("response_type") or "",
            "code_challenge": form.get("code_challenge") or "",
            "code_challenge_method": form.get("code_challenge_method") or "",
        }
        for key in ("scope", "state", "resource"):
            if form.get(key):
                query[key] = form[key]
        query["error"] = "invalid_password"
        return f"{self.issuer_url}{AUTHORIZE_PATH}?{urlencode(query)}"

    async def approve(self, form: Mapping[str, str]) -> ApprovalResult:
        """Handle the consent form once the user clicks Authorize."""
        password = self.settings.oauth_password
        if password and not constant_time_compare(form.get("password") or "", password):
            _audit("authorize_password_rejected", client_id=form.get("client_id", ""))
            return ApprovalResult(retry_url=self._retry_url(form))

        validated = validate_authorize_params(form)
        if isinstance(validated, OAuthError):
            return ApprovalResult(error=validated)

        try:
            client = await asyncio.to_thread(self.store.get_client, validated.client_id)
            if client is None:
                _audit("authorize_rejected", reason="unknown_client",
                       client_id=validated.client_id)
                return ApprovalResult(error=OAuthError("invalid_client", "Unknown client_id"))

            if validated.redirect_uri not in client.redirect_uris:
                _audit("authorize_rejected", reason="redirect_uri",
                       client_id=validated.client_id)
                return ApprovalResult(error=OAuthError(
                    "invalid_request", "redirect_uri not registered for this client"))

            # Registration does not parse URIs; a code is only stored once the
            # redirect can actually be built.
            code = secrets.token_hex(32)
            try:
                redirect_url = construct_redirect_uri(
                    validated.redirect_uri, code=code, state=validated.state or None,
                )
            except ValueError:
                _audit("authorize_rejected", reason="redirect_uri_malformed",
                       client_id=validated.client_id)
                return ApprovalResult(error=OAuthError(
                    "invalid_request", "redirect_uri is not a valid URL"))

            await self.generate_auth_code(validated, code=code)
        except StoreError:
            logger.exception("approve: credential store error")
            return ApprovalResult(error=_server_error())

        _audit("authorize_approved", client_id=validated.client_id,
               resource=validated.resource)
        return ApprovalResult(redirect_url=redirect_url)

    async def consent_deny_allowed(self, client_id: str, redirect_uri: str) -> bool:
        """Whether the consent page may link back to ``redirect_uri`` on deny.

        Only http(s) URIs registered for an existing client qualify.
        """
        if not client_id or not is_web_url(redirect_uri):
            return False
        client = await asyncio.to_thread(self.store.get_client, client_id)
        return client is not None and redirect_uri in client.redirect_uris

    async def generate_auth_code(self, params: AuthorizeParams,
                                 code: str | None = None) -> str:
        code = code or secrets.token_hex(32)
        now = self._now()
        await asyncio.to_thread(self.store.put_code, AuthorizationCode(
            code=code,
            client_id=params.client_id,
            redirect_uri=params.redirect_uri,
            code_challenge=params.code_challenge,
            code_challenge_method=params.code_challenge_method,
            scope=params.scope or DEFAULT_SCOPE,
            resource=params.resource,
            state=params.state,
            created_at=now,
            expires_at=now + AUTH_CODE_TTL,
        ))
        return code

    # --- Token exchange ---

    async def exchange_authorization_code(
        self,
        grant_type: str,
        code: str,
        redirect_uri: str,
        client_id: str,
        code_verifier: str,
    ) -> TokenResponse | OAuthError:
        """Trade a single-use code for a deployment-scoped access token."""
        if grant_type != "authorization_code":
            return OAuthError("unsupported_grant_type",
                              "Only authorization_code is supported")
        try:
            return await asyncio.to_thread(
                self._exchange, code, redirect_uri, client_id, code_verifier)
        except StoreError:
            logger.exception("token exchange: credential store error")
            return _server_error()

    def _exchange(self, code: str, redirect_uri: str, client_id: str,
                  code_verifier: str) -> TokenResponse | OAuthError:
        # JSON bodies can carry lone surrogates, which sqlite3 cannot bind.
        if not _utf8_encodable(code):
            return OAuthError("invalid_grant", "Invalid or expired authorization code")
        auth_code = self.store.get_code(code)
        if auth_code is None:
            return OAuthError("invalid_grant", "Invalid or expired authorization code")

        now = self._now()
        if auth_code.expires_at < now:
            self.store.delete_code(code)
            return OAuthError("invalid_grant", "Authorization code expired")

        # Mismatches below leave the code in place until it expires.
        if auth_code.client_id != client_id:
            return OAuthError("invalid_grant", "client_id mismatch")
        if auth_code.redirect_uri != redirect_uri:
            return OAuthError("invalid_grant", "redirect_uri mismatch")
        if (not _utf8_encodable(code_verifier)
                or not _utf8_encodable(auth_code.code_challenge)
                or not hmac.compare_digest(pkce_challenge(code_verifier).encode("ascii"),
                                           auth_code.code_challenge.encode("utf-8"))):
            return OAuthError("invalid_grant", "PKCE code_verifier verification failed")

        # Single use: only the request whose delete removed the row proceeds.
        if not self.store.delete_code(code):
            return OAuthError("invalid_grant", "Invalid or expired authorization code")

        resource = auth_code.resource
        slug = self.store.get_slug_for_resource(resource)
        if slug is None:
            return OAuthError("invalid_grant", "Unknown resource - MCP server not found")

        signing_secret = self.store.get_secret(slug)
        if signing_secret is None:
            logger.error("no signing secret for deployment %s", slug)
            return OAuthError("server_error", "JWT signing key not found for this deployment")

        jti = generate_token_id()
        claims = {
            "iss": self.issuer_url,
            "sub": TOKEN_SUBJECT,
            "aud": resource,
            "scope": auth_code.scope,
            "iat": now,
            "exp": now + ACCESS_TOKEN_TTL,
            "jti": jti,
        }
        access_token = sign_token(claims, signing_secret)
        _audit("token_issued", client_id=client_id, jti=jti, aud=resource,
               expires_in=ACCESS_TOKEN_TTL)

        return TokenResponse(
            access_token=access_token,
            expires_in=ACCESS_TOKEN_TTL,
            scope=auth_code.scope,
        )

    # --- Deployments ---

    async def provision_deployment(self, slug: str, worker_url: str) -> str:
        """Give a deployment a fresh signing secret and map its URLs to it.

        Returns the secret; the deploy pipeline pushes it to the Worker.
        Re-provisioning a slug replaces the secret, invalidating old tokens.
        """
        signing_secret = generate_signing_secret()
        aliases = resource_aliases(worker_url)

        def save() -> None:
            self.store.put_secret(slug, signing_secret)
            for url in aliases:
                self.store.map_resource_to_slug(url, slug)

        await asyncio.to_thread(save)
        _audit("deployment_provisioned", slug=slug, resources=aliases)
        logger.info("provisioned signing secret for %s (%d resource URLs)",
                    slug, len(aliases))
        return signing_secret

    async def load_access_token(self, token: str, resource: str) -> dict[str, Any] | None:
        """Verify a bearer token the way the deployed worker does.

        Returns the claims if the token is signed with the resource's secret,
        unexpired, and issued for exactly this resource. Store faults raise.
        """
        signing_secret = await asyncio.to_thread(self._secret_for_resource, resource)
        if signing_secret is None:
            return None
        claims = verify_token(token, signing_secret, now=self._now())
        if claims is None or claims.get("aud") != resource:
            return None
        return claims

    def _secret_for_resource(self, resource: str) -> str | None:
        slug = self.store.get_slug_for_resource(resource)
        if slug is None:
            return None
        return self.store.get_secret(slug)
