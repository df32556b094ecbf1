from __future__ import annotations

import base64
import binascii
import json
import os
import re
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from pydantic import BaseModel, ConfigDict, StrictInt, StrictStr, ValidationError, field_validator

from relnotes.core.config import get_settings

ENVELOPE_VERSION = 1
NONCE_BYTES = 12  # GCM standard nonce size
TAG_BYTES = 16

_HEX_KEY_RE = re.compile(r"^[0-9a-fA-F]{64}$")


class EncryptionKeyError(RuntimeError):
    pass


class CredentialDecryptionError(ValueError):
    pass


class EncryptedCredentials(BaseModel):
    """Versioned AES-256-GCM envelope stored in `integrations.encrypted_credentials`."""

    # Unknown keys are ignored; v, iv, data and tag must all be present.
    model_config = ConfigDict(frozen=True, extra="ignore")

    v: StrictInt
    iv: StrictStr
    data: StrictStr
    tag: StrictStr

    @field_validator("v")
    @classmethod
    def _supported_version(cls, value: int) -> int:
        if value != ENVELOPE_VERSION:
            raise ValueError(f"unsupported envelope version {value}")
        return value


def _load_key() -> bytes:
    raw = (get_settings().INTEGRATIONS_ENCRYPTION_KEY or "").strip()
    if not raw:
        raise EncryptionKeyError("Missing INTEGRATIONS_ENCRYPTION_KEY")

    if _HEX_KEY_RE.match(raw):
        key = bytes.fromhex(raw)
    else:
        try:
            key = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise EncryptionKeyError(
                "INTEGRATIONS_ENCRYPTION_KEY must be base64 or 64-char hex"
            ) from e

    if len(key) != 32:
        raise EncryptionKeyError(
            "INTEGRATIONS_ENCRYPTION_KEY must be 32 bytes (base64 or 64-char hex)"
        )
    return key


def ensure_encryption_key() -> None:
    _load_key()


def _b64(raw: bytes) -> str:
    return base64.b64encode(raw).decode("ascii")


def _unb64(value: str, *, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError) as e:
        raise CredentialDecryptionError(f"Envelope field {field!r} is not valid base64") from e


def encrypt_credentials(payload: dict[str, Any]) -> EncryptedCredentials:
    if not isinstance(payload, dict):
        raise TypeError("Credential payload must be a JSON object")

    key = _load_key()
    # Fresh nonce on every call; callers can never supply one.
    nonce = os.urandom(NONCE_BYTES)
    plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    sealed = AESGCM(key).encrypt(nonce, plaintext, None)

    return EncryptedCredentials(
        v=ENVELOPE_VERSION,
        iv=_b64(nonce),
        data=_b64(sealed[:-TAG_BYTES]),
        tag=_b64(sealed[-TAG_BYTES:]),
    )


def parse_encrypted_credentials(value: object) -> EncryptedCredentials | None:
    if isinstance(value, EncryptedCredentials):
        return value
    if not isinstance(value, dict):
        return None
    try:
        return EncryptedCredentials.model_validate(value)
    except ValidationError:
        return None


def decrypt_credentials(value: object) -> dict[str, Any] | None:
    """Decrypt a stored envelope.

    Returns None when the value is not a well-formed v1 envelope or the
    recovered plaintext is not a JSON object. Raises CredentialDecryptionError
    when authentication or decoding fails and EncryptionKeyError when the key
    is missing or malformed.
    """
    envelope = parse_encrypted_credentials(value)
    if envelope is None:
        return None

    key = _load_key()
    nonce = _unb64(envelope.iv, field="iv")
    data = _unb64(envelope.data, field="data")
    tag = _unb64(envelope.tag, field="tag")
    if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
        raise CredentialDecryptionError("Envelope nonce or tag has the wrong length")

    try:
        plaintext = AESGCM(key).decrypt(nonce, data + tag, None)
    except InvalidTag as e:
        raise CredentialDecryptionError("Credential authentication failed") from e

    try:
        parsed = json.loads(plaintext.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise CredentialDecryptionError("Decrypted credentials are not valid JSON") from e

    if not isinstance(parsed, dict):
        return None
    return parsed


def get_access_token_from_encrypted_credentials(value: object) -> str | None:
    # EncryptionKeyError propagates; only unusable envelopes map to None.
    try:
        decrypted = decrypt_credentials(value)
    except CredentialDecryptionError:
        return None

    token = (decrypted or {}).get("access_token")
    if isinstance(token, str) and token:
        return token
    return None
