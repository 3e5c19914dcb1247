"""Tests for deploy_tokens.py."""
import base64
import json
import string
import time

from deploy_tokens import (
    generate_signing_secret,
    generate_token_id,
    sign_token,
    verify_token,
)

SECRET = "test-secret-key-for-jwt-signing-0123456789"
B64URL_ALPHABET = string.ascii_uppercase + string.ascii_lowercase + string.digits + "-_"


def _claims(**overrides):
    now = int(time.time())
    claims = {
        "iss": "http://localhost:3000",
        "sub": "mcp-user",
        "aud": "https://my-worker.workers.dev",
        "scope": "mcp",
        "iat": now,
        "exp": now + 3600,
        "jti": "test-token-id",
    }
    claims.update(overrides)
    return claims


def _segment(obj) -> str:
    raw = json.dumps(obj, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode()


def _flip(segment: str, index: int) -> str:
    c = segment[index]
    replacement = "A" if c != "A" else "B"
    return segment[:index] + replacement + segment[index + 1:]


# ---------------------------------------------------------------------------
# sign_token
# ---------------------------------------------------------------------------

class TestSignToken:
    def test_three_segments(self):
        assert len(sign_token(_claims(), SECRET).split(".")) == 3

    def test_header_is_hs256_jwt(self):
        header_seg = sign_token(_claims(), SECRET).split(".")[0]
        header = json.loads(base64.urlsafe_b64decode(header_seg + "=" * (-len(header_seg) % 4)))
        assert header == {"alg": "HS256", "typ": "JWT"}

    def test_claims_in_payload(self):
        payload_seg = sign_token(_claims(sub="custom-subject"), SECRET).split(".")[1]
        payload = json.loads(base64.urlsafe_b64decode(payload_seg + "=" * (-len(payload_seg) % 4)))
        assert payload["sub"] == "custom-subject"
        assert payload["iss"] == "http://localhost:3000"

    def test_different_secrets_different_signatures(self):
        claims = _claims()
        sig1 = sign_token(claims, "secret-one-0123456789abcdef0123456789").split(".")[2]
        sig2 = sign_token(claims, "secret-two-0123456789abcdef0123456789").split(".")[2]
        assert sig1 != sig2

    def test_does_not_mutate_claims(self):
        claims = _claims()
        before = dict(claims)
        sign_token(claims, SECRET)
        assert claims == before


# ---------------------------------------------------------------------------
# verify_token
# ---------------------------------------------------------------------------

class TestVerifyToken:
    def test_round_trip(self):
        claims = _claims(extra={"nested": [1, 2, "three"]})
        assert verify_token(sign_token(claims, SECRET), SECRET) == claims

    def test_wrong_secret(self):
        token = sign_token(_claims(), SECRET)
        assert verify_token(token, "wrong-secret-0123456789abcdef0123456789") is None

    def test_expired(self):
        token = sign_token(_claims(exp=int(time.time()) - 100), SECRET)
        assert verify_token(token, SECRET) is None

    def test_exp_equal_to_now_still_valid(self):
        token = sign_token(_claims(exp=1000), SECRET)
        assert verify_token(token, SECRET, now=1000) is not None
        assert verify_token(token, SECRET, now=1001) is None

    def test_missing_exp_accepted(self):
        claims = _claims()
        del claims["exp"]
        assert verify_token(sign_token(claims, SECRET), SECRET) == claims

    def test_non_numeric_exp_rejected(self):
        token = sign_token(_claims(exp="tomorrow"), SECRET)
        assert verify_token(token, SECRET) is None

    def test_audience_not_checked_by_codec(self):
        token = sign_token(_claims(aud="https://other.example"), SECRET)
        assert verify_token(token, SECRET)["aud"] == "https://other.example"

    def test_malformed_segment_counts(self):
        assert verify_token("invalid", SECRET) is None
        assert verify_token("a.b", SECRET) is None
        assert verify_token("a.b.c.d", SECRET) is None
        assert verify_token("", SECRET) is None

    def test_garbage_segments(self):
        assert verify_token("not.a.token", SECRET) is None

    def test_non_string_token(self):
        assert verify_token(None, SECRET) is None

    def test_tampered_payload(self):
        header, payload, sig = sign_token(_claims(), SECRET).split(".")
        for i in (0, len(payload) // 2, len(payload) - 1):
            assert verify_token(f"{header}.{_flip(payload, i)}.{sig}", SECRET) is None

    def test_tampered_signature(self):
        header, payload, sig = sign_token(_claims(), SECRET).split(".")
        for i in (0, len(sig) // 2):
            assert verify_token(f"{header}.{payload}.{_flip(sig, i)}", SECRET) is None

    def test_tampered_signature_trailing_bits(self):
        # The last base64url character of a 32-byte signature carries two
        # unused bits; changing them must still invalidate the token.
        header, payload, sig = sign_token(_claims(), SECRET).split(".")
        last = B64URL_ALPHABET.index(sig[-1])
        altered = sig[:-1] + B64URL_ALPHABET[last ^ 1]
        assert verify_token(f"{header}.{payload}.{altered}", SECRET) is None

    def test_swapped_payload_from_other_token(self):
        t1 = sign_token(_claims(aud="https://a.example"), SECRET).split(".")
        t2 = sign_token(_claims(aud="https://b.example"), SECRET).split(".")
        assert verify_token(f"{t1[0]}.{t2[1]}.{t1[2]}", SECRET) is None

    def test_alg_none_rejected(self):
        _, payload, _ = sign_token(_claims(), SECRET).split(".")
        header = _segment({"alg": "none", "typ": "JWT"})
        assert verify_token(f"{header}.{payload}.", SECRET) is None

    def test_other_hmac_alg_rejected(self):
        claims = _claims()
        header = _segment({"alg": "HS512", "typ": "JWT"})
        _, payload, sig = sign_token(claims, SECRET).split(".")
        assert verify_token(f"{header}.{payload}.{sig}", SECRET) is None


# ---------------------------------------------------------------------------
# Random material
# ---------------------------------------------------------------------------

class TestRandomMaterial:
    def test_signing_secret_shape(self):
        secret = generate_signing_secret()
        assert len(secret) == 128
        int(secret, 16)

    def test_signing_secrets_unique(self):
        assert generate_signing_secret() != generate_signing_secret()

    def test_token_id_shape(self):
        jti = generate_token_id()
        assert len(jti) == 32
        int(jti, 16)
