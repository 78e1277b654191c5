from __future__ import annotations

import base64
import binascii
from typing import Optional

from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, padding, rsa

from fleetauth.logging import get_logger

logger = get_logger(__name__)


def load_public_key(public_key_pem: str):
    """Parse a PEM public key, returning None when it is unusable."""
    try:
        return serialization.load_pem_public_key(public_key_pem.strip().encode("ascii"))
    except (ValueError, TypeError, UnicodeEncodeError, UnsupportedAlgorithm):
        return None


def normalize_public_key(public_key_pem: str) -> Optional[str]:
    """Canonical SubjectPublicKeyInfo PEM for a key, or None if it does not parse.

    Two submissions of the same key that differ only in line wrapping or
    surrounding whitespace normalise to the same string.
    """
    key = load_public_key(public_key_pem)
    if key is None:
        return None
    return key.public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")


def _decode_signature(signature: str) -> Optional[bytes]:
    try:
        return base64.b64decode(signature.strip(), validate=True)
    except (binascii.Error, ValueError):
        return None


def verify_signature(body: bytes, public_key_pem: str, signature: str) -> bool:
    """Check a detached base64 signature over ``body``.

    RSA keys are verified with PKCS#1 v1.5 / SHA-256 and EC keys with
    ECDSA / SHA-256. Any unusable key, undecodable signature or mismatch
    returns False; this function never raises for bad input.
    """
    key = load_public_key(public_key_pem)
    if key is None:
        logger.info("signature_key_unusable")
        return False
    raw_signature = _decode_signature(signature)
    if not raw_signature:
        logger.info("signature_undecodable")
        return False
    try:
        if isinstance(key, rsa.RSAPublicKey):
            key.verify(raw_signature, body, padding.PKCS1v15(), hashes.SHA256())
        elif isinstance(key, ec.EllipticCurvePublicKey):
            key.verify(raw_signature, body, ec.ECDSA(hashes.SHA256()))
        else:
            logger.info("signature_key_type_unsupported", key_type=type(key).__name__)
            return False
    except InvalidSignature:
        return False
    return True


class SignatureVerifier:
    """Stateless verifier handed to the auth request processor."""

    def verify(self, body: bytes, public_key_pem: str, signature: str) -> bool:
        return verify_signature(body, public_key_pem, signature)

    def normalize(self, public_key_pem: str) -> Optional[str]:
        return normalize_public_key(public_key_pem)


__all__ = [
    "SignatureVerifier",
    "load_public_key",
    "normalize_public_key",
    "verify_signature",
]
