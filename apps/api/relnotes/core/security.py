from __future__ import annotations

import base64
import hashlib
import hmac
import os
from dataclasses import dataclass

from relnotes.core.config import get_settings

PKCE_METHOD = "S256"
PKCE_VERIFIER_BYTES = 32  # 43 base64url chars, the RFC 7636 minimum


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def new_random_token(*, nbytes: int = 32) -> str:
    # URL-safe base64 without padding to keep cookie/header/query compact.
    return _b64url(os.urandom(nbytes))


@dataclass(frozen=True)
class PkcePair:
    verifier: str
    challenge: str
    method: str = PKCE_METHOD


def pkce_challenge(verifier: str) -> str:
    return _b64url(hashlib.sha256(verifier.encode("ascii")).digest())


def create_pkce_pair() -> PkcePair:
    verifier = _b64url(os.urandom(PKCE_VERIFIER_BYTES))
    return PkcePair(verifier=verifier, challenge=pkce_challenge(verifier))


def _session_signature(payload: str) -> str:
    settings = get_settings()
    digest = hmac.new(
        settings.SESSION_SECRET.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256,
    ).digest()
    return _b64url(digest)


def sign_session_token(*, user_id: str, organization_id: str) -> str:
    payload = f"{user_id}.{organization_id}"
    return f"{payload}.{_session_signature(payload)}"


def verify_session_token(token: str) -> tuple[str, str] | None:
    parts = token.split(".")
    if len(parts) != 3 or not all(parts):
        return None

    user_id, organization_id, signature = parts
    expected = _session_signature(f"{user_id}.{organization_id}")
    if not hmac.compare_digest(signature, expected):
        return None
    return user_id, organization_id
