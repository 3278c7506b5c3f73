"""License credential construction, signing, encryption and hashing.

A credential has the form::

    blk_<base64url(claims)>.<base64url(ed25519 signature)>

where ``claims`` is canonical JSON (sorted keys, no whitespace) carrying the
key id, subscription id, organization id, tier, issue and expiry times, and
a 32-byte random nonce.  The signature covers the encoded claims segment.

Only the SHA-256 digest of a credential is used for lookup; the credential
itself is persisted Fernet-encrypted and is never handed out again after
issuance.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
import secrets
from datetime import UTC, datetime
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    PublicFormat,
)

logger = logging.getLogger(__name__)

CREDENTIAL_PREFIX = "blk_"
NONCE_BYTES = 32


class CredentialFormatError(ValueError):
    """Raised when a presented credential cannot be decoded."""


class CredentialSignatureError(ValueError):
    """Raised when a credential's Ed25519 signature does not verify."""


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(segment: str) -> bytes:
    padding = "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def hash_credential(credential: str) -> str:
    """SHA-256 hex digest of a raw credential, used as the lookup key."""
    return hashlib.sha256(credential.encode("utf-8")).hexdigest()


def display_prefix(key_id: str) -> str:
    """Short, non-secret identifier shown to operators in place of the key."""
    return f"{CREDENTIAL_PREFIX}{key_id[:8]}"


def new_nonce() -> str:
    return _b64url_encode(secrets.token_bytes(NONCE_BYTES))


# ---------------------------------------------------------------------------
# Signing
# ---------------------------------------------------------------------------


class CredentialSigner:
    """Ed25519 signer and verifier for license credentials.

    Parameters
    ----------
    private_key_bytes:
        Raw 32-byte Ed25519 private key seed.
    """

    def __init__(self, private_key_bytes: bytes) -> None:
        self._private_key = Ed25519PrivateKey.from_private_bytes(private_key_bytes)
        self._public_key: Ed25519PublicKey = self._private_key.public_key()

    @classmethod
    def from_hex(cls, private_key_hex: str) -> CredentialSigner:
        try:
            raw = bytes.fromhex(private_key_hex.strip())
        except ValueError as exc:
            raise ValueError("License signing key must be hex-encoded") from exc
        if len(raw) != 32:
            raise ValueError(f"License signing key must be 32 bytes, got {len(raw)}")
        return cls(raw)

    @classmethod
    def generate(cls) -> CredentialSigner:
        """Create a signer with a freshly generated key."""
        private_key = Ed25519PrivateKey.generate()
        raw = private_key.private_bytes(Encoding.Raw, PrivateFormat.Raw, NoEncryption())
        return cls(raw)

    @property
    def public_key_hex(self) -> str:
        return self._public_key.public_bytes(Encoding.Raw, PublicFormat.Raw).hex()

    def sign(self, claims: dict[str, Any]) -> str:
        """Encode and sign *claims*, returning the full credential string."""
        canonical = json.dumps(claims, sort_keys=True, separators=(",", ":"))
        claims_segment = _b64url_encode(canonical.encode("utf-8"))
        signature = self._private_key.sign(claims_segment.encode("ascii"))
        return f"{CREDENTIAL_PREFIX}{claims_segment}.{_b64url_encode(signature)}"

    def verify(self, credential: str) -> dict[str, Any]:
        """Verify a credential's signature and return its claims.

        Raises
        ------
        CredentialFormatError
            If the credential is not well formed.
        CredentialSignatureError
            If the signature was not produced by this signer's key.
        """
        claims_segment, signature = split_credential(credential)
        try:
            self._public_key.verify(signature, claims_segment.encode("ascii"))
        except InvalidSignature as exc:
            raise CredentialSignatureError("Credential signature does not verify") from exc
        return decode_claims(claims_segment)


def split_credential(credential: str) -> tuple[str, bytes]:
    """Split a credential into its claims segment and raw signature."""
    if not credential.startswith(CREDENTIAL_PREFIX):
        raise CredentialFormatError("Credential has an unknown prefix")
    body = credential[len(CREDENTIAL_PREFIX) :]
    claims_segment, sep, signature_segment = body.partition(".")
    if not sep or not claims_segment or not signature_segment:
        raise CredentialFormatError("Credential must have a claims and a signature segment")
    try:
        signature = _b64url_decode(signature_segment)
    except (binascii.Error, ValueError) as exc:
        raise CredentialFormatError("Credential signature is not base64url") from exc
    return claims_segment, signature


def decode_claims(claims_segment: str) -> dict[str, Any]:
    try:
        claims = json.loads(_b64url_decode(claims_segment))
    except (binascii.Error, ValueError) as exc:
        raise CredentialFormatError("Credential claims are not valid base64url JSON") from exc
    if not isinstance(claims, dict):
        raise CredentialFormatError("Credential claims must be a JSON object")
    return claims


def claims_expiry(claims: dict[str, Any]) -> datetime:
    exp = claims.get("exp")
    if not isinstance(exp, int):
        raise CredentialFormatError("Credential claims carry no integer 'exp'")
    return datetime.fromtimestamp(exp, tz=UTC)


# ---------------------------------------------------------------------------
# Encryption at rest
# ---------------------------------------------------------------------------


class CredentialVault:
    """Fernet encryption for credential material stored in ``license_keys``.

    The Fernet key is derived from the configured secret via SHA-256 so that
    any operator-supplied string can be used.
    """

    def __init__(self, secret: str) -> None:
        if not secret:
            raise ValueError("Credential encryption secret must not be empty")
        derived = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
        self._fernet = Fernet(derived)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, token: str) -> str:
        """Decrypt stored material.

        Raises
        ------
        ValueError
            If the token was not produced with this vault's key.
        """
        try:
            return self._fernet.decrypt(token.encode("ascii")).decode("utf-8")
        except InvalidToken as exc:
            raise ValueError("Credential material could not be decrypted") from exc
