"""Tests for billing_engine/license/credentials.py"""

from __future__ import annotations

import time

import pytest

from billing_engine.license.credentials import (
    CREDENTIAL_PREFIX,
    CredentialFormatError,
    CredentialSignatureError,
    CredentialSigner,
    CredentialVault,
    claims_expiry,
    display_prefix,
    hash_credential,
    new_nonce,
)
from billing_engine.license.license_manager import verify_offline
from billing_engine.models.outcomes import InvalidReason

KEY_HEX = "4c" * 32


def _claims(**overrides) -> dict:
    now = int(time.time())
    claims = {
        "kid": "abc123",
        "sub": "s1",
        "org": "org-acme",
        "tier": "team",
        "iat": now,
        "exp": now + 3600,
        "nonce": new_nonce(),
    }
    claims.update(overrides)
    return claims


class TestSigner:
    def test_sign_and_verify(self) -> None:
        signer = CredentialSigner.from_hex(KEY_HEX)
        credential = signer.sign(_claims())
        assert credential.startswith(CREDENTIAL_PREFIX)
        assert signer.verify(credential)["org"] == "org-acme"

    def test_other_key_rejects(self) -> None:
        credential = CredentialSigner.from_hex(KEY_HEX).sign(_claims())
        with pytest.raises(CredentialSignatureError):
            CredentialSigner.generate().verify(credential)

    def test_tampered_claims_rejected(self) -> None:
        signer = CredentialSigner.from_hex(KEY_HEX)
        credential = signer.sign(_claims(tier="individual"))
        forged_claims = signer.sign(_claims(tier="enterprise")).split(".")[0]
        forged = f"{forged_claims}.{credential.split('.')[1]}"
        with pytest.raises(CredentialSignatureError):
            signer.verify(forged)

    @pytest.mark.parametrize("credential", ["nope", "blk_", "blk_onlyclaims", "blk_a.!!!"])
    def test_malformed(self, credential: str) -> None:
        with pytest.raises((CredentialFormatError, CredentialSignatureError)):
            CredentialSigner.from_hex(KEY_HEX).verify(credential)

    def test_from_hex_validates_length(self) -> None:
        with pytest.raises(ValueError, match="32 bytes"):
            CredentialSigner.from_hex("abcd")
        with pytest.raises(ValueError, match="hex"):
            CredentialSigner.from_hex("zz" * 32)

    def test_nonce_makes_credentials_unique(self) -> None:
        signer = CredentialSigner.from_hex(KEY_HEX)
        assert signer.sign(_claims(nonce=new_nonce())) != signer.sign(_claims(nonce=new_nonce()))

    def test_claims_expiry_requires_integer(self) -> None:
        with pytest.raises(CredentialFormatError):
            claims_expiry({"exp": "tomorrow"})


class TestVerifyOffline:
    def test_valid(self) -> None:
        signer = CredentialSigner.from_hex(KEY_HEX)
        result = verify_offline(signer, signer.sign(_claims()))
        assert result.valid
        assert result.subscription_id == "s1"

    def test_expired(self) -> None:
        signer = CredentialSigner.from_hex(KEY_HEX)
        result = verify_offline(signer, signer.sign(_claims(exp=int(time.time()) - 1)))
        assert result.reason == InvalidReason.EXPIRED

    def test_bad_signature(self) -> None:
        credential = CredentialSigner.generate().sign(_claims())
        result = verify_offline(CredentialSigner.from_hex(KEY_HEX), credential)
        assert result.reason == InvalidReason.BAD_SIGNATURE

    def test_malformed(self) -> None:
        result = verify_offline(CredentialSigner.from_hex(KEY_HEX), "garbage")
        assert result.reason == InvalidReason.MALFORMED


class TestVault:
    def test_round_trip(self) -> None:
        vault = CredentialVault("secret-one")
        token = vault.encrypt("blk_material")
        assert token != "blk_material"
        assert vault.decrypt(token) == "blk_material"

    def test_wrong_key(self) -> None:
        token = CredentialVault("secret-one").encrypt("blk_material")
        with pytest.raises(ValueError, match="decrypted"):
            CredentialVault("secret-two").decrypt(token)

    def test_empty_secret_rejected(self) -> None:
        with pytest.raises(ValueError):
            CredentialVault("")


def test_hash_and_prefix_are_stable() -> None:
    assert hash_credential("blk_x") == hash_credential("blk_x")
    assert len(hash_credential("blk_x")) == 64
    assert display_prefix("0123456789abcdef") == "blk_01234567"
