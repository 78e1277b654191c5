from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
from typing import Any, Optional

from fleetauth.logging import get_logger

logger = get_logger(__name__)

_HEADER = {"alg": "HS256", "typ": "JWT"}


class JWTDecodeError(Exception):
    """Token is malformed, forged or carries unexpected claims."""


class JWTExpiredError(JWTDecodeError):
    """Token signature is genuine but its exp claim has passed."""

    def __init__(self, payload: dict[str, Any]):
        super().__init__("token expired")
        self.payload = payload


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _sign(secret: str, signing_input: str) -> str:
    return _encode_segment(
        hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    )


def encode_jwt(payload: dict[str, Any], secret: str) -> str:
    header_enc = _encode_segment(json.dumps(_HEADER, separators=(",", ":")).encode())
    payload_enc = _encode_segment(
        json.dumps(payload, separators=(",", ":"), sort_keys=True).encode()
    )
    signing_input = f"{header_enc}.{payload_enc}"
    return f"{signing_input}.{_sign(secret, signing_input)}"


def decode_jwt(
    token: str,
    secret: str,
    *,
    issuer: Optional[str] = None,
    audience: Optional[str] = None,
    leeway_seconds: float = 0,
    now: Optional[float] = None,
    require_exp: bool = True,
) -> dict[str, Any]:
    """Decode and check an HS256 token.

    Raises JWTExpiredError when only the expiry check fails and JWTDecodeError
    for everything else. Only HS256 is accepted so a token cannot pick its own
    algorithm.
    """
    try:
        header_b64, payload_b64, sig_b64 = token.split(".")
    except ValueError:
        raise JWTDecodeError("token must have three segments")

    try:
        header = json.loads(_decode_segment(header_b64))
    except Exception:
        raise JWTDecodeError("undecodable token header")
    if not isinstance(header, dict) or header.get("alg") != "HS256":
        logger.info("jwt_unexpected_algorithm")
        raise JWTDecodeError("unsupported token algorithm")

    expected_sig = _sign(secret, f"{header_b64}.{payload_b64}")
    if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8", "replace")):
        raise JWTDecodeError("token signature mismatch")

    try:
        payload = json.loads(_decode_segment(payload_b64))
    except Exception:
        raise JWTDecodeError("undecodable token payload")
    if not isinstance(payload, dict):
        raise JWTDecodeError("token payload must be an object")

    if issuer is not None and payload.get("iss") != issuer:
        raise JWTDecodeError("unexpected issuer")
    if audience is not None:
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = audience in aud
        else:
            valid_aud = aud == audience
        if not valid_aud:
            raise JWTDecodeError("unexpected audience")

    exp = payload.get("exp")
    if exp is None:
        if require_exp:
            raise JWTDecodeError("missing exp claim")
        return payload
    try:
        exp_ts = float(exp)
    except (TypeError, ValueError):
        raise JWTDecodeError("non-numeric exp claim")
    current = time.time() if now is None else now
    if exp_ts <= current - leeway_seconds:
        raise JWTExpiredError(payload)
    return payload


__all__ = ["JWTDecodeError", "JWTExpiredError", "encode_jwt", "decode_jwt"]
