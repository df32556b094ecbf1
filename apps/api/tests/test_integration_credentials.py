from __future__ import annotations

import base64

import pytest

from relnotes.core.config import get_settings
from relnotes.core.crypto import (
    CredentialDecryptionError,
    EncryptedCredentials,
    EncryptionKeyError,
    decrypt_credentials,
    encrypt_credentials,
    get_access_token_from_encrypted_credentials,
    parse_encrypted_credentials,
)


def _flip_first_byte(value: str) -> str:
    raw = bytearray(base64.b64decode(value))
    raw[0] ^= 0x01
    return base64.b64encode(bytes(raw)).decode("ascii")


def test_round_trip_preserves_payload() -> None:
    payload = {"access_token": "gho_secret", "refresh_token": None, "scope": "repo,read:org"}

    envelope = encrypt_credentials(payload)

    assert envelope.v == 1
    assert len(base64.b64decode(envelope.iv)) == 12
    assert len(base64.b64decode(envelope.tag)) == 16
    assert "gho_secret" not in envelope.model_dump_json()
    assert decrypt_credentials(envelope.model_dump()) == payload


def test_each_encryption_uses_a_fresh_nonce() -> None:
    first = encrypt_credentials({"access_token": "same"})
    second = encrypt_credentials({"access_token": "same"})

    assert first.iv != second.iv
    assert first.data != second.data


def test_tampered_ciphertext_or_tag_fails_authentication() -> None:
    envelope = encrypt_credentials({"access_token": "token"}).model_dump()

    with pytest.raises(CredentialDecryptionError):
        decrypt_credentials({**envelope, "data": _flip_first_byte(envelope["data"])})
    with pytest.raises(CredentialDecryptionError):
        decrypt_credentials({**envelope, "tag": _flip_first_byte(envelope["tag"])})


def test_wrong_key_fails_authentication(monkeypatch) -> None:
    envelope = encrypt_credentials({"access_token": "token"}).model_dump()

    monkeypatch.setenv("INTEGRATIONS_ENCRYPTION_KEY", "f" * 64)
    get_settings.cache_clear()

    with pytest.raises(CredentialDecryptionError):
        decrypt_credentials(envelope)
    assert get_access_token_from_encrypted_credentials(envelope) is None


def test_malformed_envelopes_are_not_credentials() -> None:
    envelope = encrypt_credentials({"access_token": "token"}).model_dump()

    assert parse_encrypted_credentials(None) is None
    assert parse_encrypted_credentials("not-a-dict") is None
    assert parse_encrypted_credentials({**envelope, "v": 2}) is None
    assert parse_encrypted_credentials({k: v for k, v in envelope.items() if k != "tag"}) is None
    assert parse_encrypted_credentials({**envelope, "iv": 123}) is None
    assert decrypt_credentials({**envelope, "v": 2}) is None

    parsed = parse_encrypted_credentials(envelope)
    assert isinstance(parsed, EncryptedCredentials)


def test_bad_base64_and_wrong_nonce_length_raise() -> None:
    envelope = encrypt_credentials({"access_token": "token"}).model_dump()

    with pytest.raises(CredentialDecryptionError):
        decrypt_credentials({**envelope, "iv": "%%%"})
    with pytest.raises(CredentialDecryptionError):
        decrypt_credentials({**envelope, "iv": base64.b64encode(b"short").decode("ascii")})


def test_non_object_plaintext_decrypts_to_none() -> None:
    from cryptography.hazmat.primitives.ciphers.aead import AESGCM

    key = bytes.fromhex(get_settings().INTEGRATIONS_ENCRYPTION_KEY or "")
    nonce = b"\x00" * 12
    sealed = AESGCM(key).encrypt(nonce, b'["not", "an", "object"]', None)
    envelope = {
        "v": 1,
        "iv": base64.b64encode(nonce).decode("ascii"),
        "data": base64.b64encode(sealed[:-16]).decode("ascii"),
        "tag": base64.b64encode(sealed[-16:]).decode("ascii"),
    }

    assert decrypt_credentials(envelope) is None
    assert get_access_token_from_encrypted_credentials(envelope) is None


def test_base64_key_is_accepted(monkeypatch) -> None:
    monkeypatch.setenv("INTEGRATIONS_ENCRYPTION_KEY", base64.b64encode(b"k" * 32).decode("ascii"))
    get_settings.cache_clear()

    envelope = encrypt_credentials({"access_token": "token"})
    assert get_access_token_from_encrypted_credentials(envelope.model_dump()) == "token"


@pytest.mark.parametrize(
    "raw",
    [
        "",
        "abc",
        base64.b64encode(b"k" * 16).decode("ascii"),
        "0" * 63,
    ],
)
def test_invalid_keys_are_rejected(monkeypatch, raw: str) -> None:
    monkeypatch.setenv("INTEGRATIONS_ENCRYPTION_KEY", raw)
    get_settings.cache_clear()

    with pytest.raises(EncryptionKeyError):
        encrypt_credentials({"access_token": "token"})


def test_missing_key_propagates_from_token_extractor(monkeypatch) -> None:
    envelope = encrypt_credentials({"access_token": "token"}).model_dump()

    monkeypatch.setenv("INTEGRATIONS_ENCRYPTION_KEY", "")
    get_settings.cache_clear()

    with pytest.raises(EncryptionKeyError):
        get_access_token_from_encrypted_credentials(envelope)


def test_token_extractor_requires_non_empty_access_token() -> None:
    assert get_access_token_from_encrypted_credentials(None) is None
    assert (
        get_access_token_from_encrypted_credentials(
            encrypt_credentials({"access_token": ""}).model_dump()
        )
        is None
    )
    assert (
        get_access_token_from_encrypted_credentials(
            encrypt_credentials({"refresh_token": "r"}).model_dump()
        )
        is None
    )
    assert (
        get_access_token_from_encrypted_credentials(
            encrypt_credentials({"access_token": "lin_api_x"}).model_dump()
        )
        == "lin_api_x"
    )


def test_stored_token_survives_until_envelope_is_corrupted() -> None:
    envelope = encrypt_credentials({"access_token": "ghp_xyz"}).model_dump()
    assert get_access_token_from_encrypted_credentials(envelope) == "ghp_xyz"

    envelope["data"] = _flip_first_byte(envelope["data"])
    assert get_access_token_from_encrypted_credentials(envelope) is None


@pytest.mark.parametrize("version", [True, 1.0, "1", 0, 2])
def test_version_must_be_exactly_integer_one(version) -> None:  # type: ignore[no-untyped-def]
    envelope = encrypt_credentials({"access_token": "ghp_xyz"}).model_dump()
    envelope["v"] = version

    assert parse_encrypted_credentials(envelope) is None
    assert get_access_token_from_encrypted_credentials(envelope) is None


def test_unknown_envelope_keys_are_ignored() -> None:
    envelope = encrypt_credentials({"access_token": "ghp_xyz"}).model_dump()

    assert get_access_token_from_encrypted_credentials({**envelope, "alg": "A256GCM"}) == "ghp_xyz"
