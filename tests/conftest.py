"""Shared fixtures: a controllable clock and an in-memory credential store."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from deploy_config import OAuthSettings
from deploy_oauth import DeployOAuthProvider
from deploy_store import CredentialStore, SecretCipher

ISSUER = "https://deploy.example.com"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="session")
def cipher():
    # scrypt is deliberately slow; derive the key once.
    return SecretCipher("test-oauth-encryption-key")


@pytest.fixture
def store(cipher, clock):
    s = CredentialStore(":memory:", cipher, clock=clock)
    yield s
    s.close()


@pytest.fixture
def settings():
    return OAuthSettings(issuer_url=ISSUER)


@pytest.fixture
def provider(settings, store, clock):
    return DeployOAuthProvider(settings, store, clock=clock)
