"""
deploy_config.py: configuration for the mcp-deploy authorization server.

Settings are resolved once at startup and handed to every component as an
explicit object. Nothing in the protocol code reads the environment.

Resolution order (later wins):
  1. optional YAML file (``--config`` or MCP_DEPLOY_CONFIG)
  2. environment: APP_URL, OAUTH_PASSWORD, ENCRYPTION_KEY, MCP_DEPLOY_DB

Issuer URL: APP_URL, then https://$VERCEL_PROJECT_PRODUCTION_URL, then
https://$VERCEL_URL, then http://localhost:3000.
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping

import yaml

logger = logging.getLogger("mcp-deploy-oauth")

DEFAULT_ISSUER_URL = "http://localhost:3000"
DEFAULT_ENCRYPTION_KEY = "mcp-deploy-local-dev-key"
DEFAULT_DATABASE_PATH = Path("data") / "mcp-deploy.db"

_CONFIG_KEYS = {"app_url", "oauth_password", "encryption_key", "database_path"}


@dataclass(frozen=True)
class OAuthSettings:
    issuer_url: str = DEFAULT_ISSUER_URL
    oauth_password: str | None = None
    encryption_key: str = DEFAULT_ENCRYPTION_KEY
    database_path: Path = DEFAULT_DATABASE_PATH


def resolve_issuer_url(env: Mapping[str, str], app_url: str | None = None) -> str:
    """Pick the public base URL of this instance."""
    if env.get("APP_URL"):
        url = env["APP_URL"]
    elif app_url:
        url = app_url
    elif env.get("VERCEL_PROJECT_PRODUCTION_URL"):
        url = f"https://{env['VERCEL_PROJECT_PRODUCTION_URL']}"
    elif env.get("VERCEL_URL"):
        url = f"https://{env['VERCEL_URL']}"
    else:
        url = DEFAULT_ISSUER_URL
    return url.rstrip("/")


def _load_config_file(config_path: Path) -> dict[str, str]:
    """Load optional settings from a YAML file."""
    if not config_path.exists():
        raise SystemExit(f"Config file not found: {config_path}")

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise SystemExit(f"Invalid config: expected a mapping in {config_path}")

    unknown = set(raw) - _CONFIG_KEYS
    if unknown:
        raise SystemExit(
            f"Unknown config keys in {config_path}: {', '.join(sorted(unknown))}. "
            f"Valid keys: {', '.join(sorted(_CONFIG_KEYS))}"
        )
    return {k: str(v) for k, v in raw.items() if v is not None}


def load_settings(
    env: Mapping[str, str] | None = None,
    config_path: Path | None = None,
) -> OAuthSettings:
    if env is None:
        env = os.environ
    if config_path is None and env.get("MCP_DEPLOY_CONFIG"):
        config_path = Path(env["MCP_DEPLOY_CONFIG"])

    file_cfg = _load_config_file(config_path) if config_path else {}

    encryption_key = env.get("ENCRYPTION_KEY") or file_cfg.get("encryption_key")
    if not encryption_key:
        logger.warning("ENCRYPTION_KEY not set, using the local development key")
        encryption_key = DEFAULT_ENCRYPTION_KEY

    database_path = env.get("MCP_DEPLOY_DB") or file_cfg.get("database_path")

    return OAuthSettings(
        issuer_url=resolve_issuer_url(env, file_cfg.get("app_url")),
        oauth_password=env.get("OAUTH_PASSWORD") or file_cfg.get("oauth_password") or None,
        encryption_key=encryption_key,
        database_path=Path(database_path) if database_path else DEFAULT_DATABASE_PATH,
    )
