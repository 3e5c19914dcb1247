"""
deploy_store.py: persistent OAuth state for mcp-deploy.

Four tables in one SQLite database:
  oauth_clients       client_id -> client record, expires after a year
  oauth_codes         code -> pending authorization code, expires after 10 min
  jwt_secrets         deployment slug -> signing secret (AES-256-GCM at rest)
  worker_url_mapping  resource URL -> deployment slug

Expiry is enforced on read: every client/code lookup first deletes rows of
that kind whose expiry has passed. There is no background sweeper.

Anything that goes wrong below this module (sqlite errors, corrupt rows,
undecryptable secrets) surfaces as StoreError, never as "not found".
"""

import json
import logging
import secrets
import sqlite3
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.scrypt import Scrypt

logger = logging.getLogger("mcp-deploy-store")

CLIENT_TTL = 365 * 86400  # 1 year
AUTH_CODE_TTL = 600  # 10 minutes

_SCHEMA = """
CREATE TABLE IF NOT EXISTS oauth_clients (
    client_id TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    expires_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS oauth_codes (
    code TEXT PRIMARY KEY,
    data TEXT NOT NULL,
    expires_at INTEGER NOT NULL
);
CREATE TABLE IF NOT EXISTS jwt_secrets (
    slug TEXT PRIMARY KEY,
    secret TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS worker_url_mapping (
    worker_url TEXT PRIMARY KEY,
    slug TEXT NOT NULL
);
"""


class StoreError(Exception):
    """The credential store could not service a request."""


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass
class OAuthClient:
    client_id: str
    redirect_uris: list[str]
    client_secret: str | None = None
    client_name: str = "Unknown Client"
    grant_types: list[str] = field(default_factory=lambda: ["authorization_code"])
    response_types: list[str] = field(default_factory=lambda: ["code"])
    scope: str = "mcp"
    token_endpoint_auth_method: str = "client_secret_post"
    created_at: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    code_challenge: str
    code_challenge_method: str
    scope: str
    resource: str  # URL of the deployment this code grants access to
    created_at: int
    expires_at: int
    state: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


# ---------------------------------------------------------------------------
# Encryption at rest
# ---------------------------------------------------------------------------

class SecretCipher:
    """AES-256-GCM with a scrypt-derived key.

    Ciphertext format is ``hex(iv):hex(tag):hex(ciphertext)``.
    """

    SALT = b"mcp-deploy-salt"
    IV_LENGTH = 16
    TAG_LENGTH = 16

    def __init__(self, passphrase: str):
        kdf = Scrypt(salt=self.SALT, length=32, n=2**14, r=8, p=1)
        self._aead = AESGCM(kdf.derive(passphrase.encode("utf-8")))

    def encrypt(self, plaintext: str) -> str:
        iv = secrets.token_bytes(self.IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[: -self.TAG_LENGTH], sealed[-self.TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        parts = token.split(":")
        if len(parts) != 3:
            raise StoreError("Invalid encrypted text format")
        try:
            iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
            return self._aead.decrypt(iv, ciphertext + tag, None).decode("utf-8")
        except (ValueError, InvalidTag) as e:
            raise StoreError("Could not decrypt stored secret") from e


# ---------------------------------------------------------------------------
# Store
# ---------------------------------------------------------------------------

class CredentialStore:
    """SQLite-backed store for clients, codes, and per-deployment secrets.

    Every call goes to the database; nothing is cached in-process. Puts
    replace any existing row with the same key.
    """

    def __init__(self, path: str | Path, cipher: SecretCipher,
                 clock: Callable[[], float] = time.time):
        self.cipher = cipher
        self.clock = clock
        self._lock = threading.Lock()
        try:
            if str(path) != ":memory:":
                Path(path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(str(path), check_same_thread=False)
            if str(path) != ":memory:":
                self._conn.execute("PRAGMA journal_mode = WAL")
            self._conn.executescript(_SCHEMA)
        except (OSError, sqlite3.Error) as e:
            raise StoreError(f"Cannot open credential store at {path}") from e

    def _now(self) -> int:
        return int(self.clock())

    def _write(self, sql: str, params: tuple = ()) -> int:
        """Run a statement in its own transaction; return affected rows."""
        with self._lock:
            try:
                with self._conn:
                    return self._conn.execute(sql, params).rowcount
            except sqlite3.Error as e:
                raise StoreError("Credential store query failed") from e

    def _fetch_one(self, sql: str, params: tuple = ()) -> tuple | None:
        with self._lock:
            try:
                return self._conn.execute(sql, params).fetchone()
            except sqlite3.Error as e:
                raise StoreError("Credential store query failed") from e

    def _read_live(self, table: str, key_column: str, key: str) -> str | None:
        """Sweep expired rows of a table, then fetch one row's data."""
        with self._lock:
            try:
                with self._conn:
                    swept = self._conn.execute(
                        f"DELETE FROM {table} WHERE expires_at < ?", (self._now(),),
                    ).rowcount
                    row = self._conn.execute(
                        f"SELECT data FROM {table} WHERE {key_column} = ?", (key,),
                    ).fetchone()
            except sqlite3.Error as e:
                raise StoreError("Credential store query failed") from e
        if swept:
            logger.debug("swept %d expired rows from %s", swept, table)
        return row[0] if row else None

    @staticmethod
    def _decode(raw: str, record_type: type) -> Any:
        try:
            return record_type(**json.loads(raw))
        except (ValueError, TypeError) as e:
            raise StoreError(f"Corrupt {record_type.__name__} record") from e

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # --- Clients ---

    def put_client(self, client: OAuthClient) -> None:
        self._write(
            "INSERT OR REPLACE INTO oauth_clients (client_id, data, expires_at) VALUES (?, ?, ?)",
            (client.client_id, json.dumps(client.to_dict()), self._now() + CLIENT_TTL),
        )

    def get_client(self, client_id: str) -> OAuthClient | None:
        raw = self._read_live("oauth_clients", "client_id", client_id)
        return self._decode(raw, OAuthClient) if raw is not None else None

    def delete_client(self, client_id: str) -> None:
        self._write("DELETE FROM oauth_clients WHERE client_id = ?", (client_id,))

    # --- Authorization codes ---

    def put_code(self, code: AuthorizationCode) -> None:
        self._write(
            "INSERT OR REPLACE INTO oauth_codes (code, data, expires_at) VALUES (?, ?, ?)",
            (code.code, json.dumps(code.to_dict()), self._now() + AUTH_CODE_TTL),
        )

    def get_code(self, code: str) -> AuthorizationCode | None:
        raw = self._read_live("oauth_codes", "code", code)
        return self._decode(raw, AuthorizationCode) if raw is not None else None

    def delete_code(self, code: str) -> bool:
        """Delete a code. True only for the caller that actually removed it."""
        return self._write("DELETE FROM oauth_codes WHERE code = ?", (code,)) == 1

    # --- Per-deployment signing secrets ---

    def put_secret(self, slug: str, secret: str) -> None:
        self._write(
            "INSERT OR REPLACE INTO jwt_secrets (slug, secret) VALUES (?, ?)",
            (slug, self.cipher.encrypt(secret)),
        )

    def get_secret(self, slug: str) -> str | None:
        row = self._fetch_one("SELECT secret FROM jwt_secrets WHERE slug = ?", (slug,))
        if row is None:
            return None
        return self.cipher.decrypt(row[0])

    def map_resource_to_slug(self, url: str, slug: str) -> None:
        self._write(
            "INSERT OR REPLACE INTO worker_url_mapping (worker_url, slug) VALUES (?, ?)",
            (url, slug),
        )

    def get_slug_for_resource(self, url: str) -> str | None:
        row = self._fetch_one(
            "SELECT slug FROM worker_url_mapping WHERE worker_url = ?", (url,),
        )
        return row[0] if row else None
