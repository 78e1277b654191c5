"""Tests for detached request signature verification."""

import base64

from fleetauth.service.signature import (
    SignatureVerifier,
    normalize_public_key,
    verify_signature,
)

BODY = b'{"identity_data":"{\\"mac\\":\\"00:11:22\\"}","public_key":"..."}'


class TestVerifySignature:
    def test_valid_rsa_signature(self, device_key):
        assert verify_signature(BODY, device_key.public_pem, device_key.sign(BODY))

    def test_valid_ec_signature(self, ec_device_key):
        assert verify_signature(BODY, ec_device_key.public_pem, ec_device_key.sign(BODY))

    def test_signature_over_different_body_fails(self, device_key):
        signature = device_key.sign(BODY)
        assert not verify_signature(BODY + b" ", device_key.public_pem, signature)

    def test_signature_from_other_key_fails(self, device_key, other_device_key):
        signature = other_device_key.sign(BODY)
        assert not verify_signature(BODY, device_key.public_pem, signature)

    def test_malformed_key_fails_closed(self, device_key):
        assert not verify_signature(BODY, "not a key", device_key.sign(BODY))

    def test_truncated_pem_fails_closed(self, device_key):
        truncated = device_key.public_pem[: len(device_key.public_pem) // 2]
        assert not verify_signature(BODY, truncated, device_key.sign(BODY))

    def test_non_base64_signature_fails_closed(self, device_key):
        assert not verify_signature(BODY, device_key.public_pem, "%%%not-base64%%%")

    def test_empty_signature_fails_closed(self, device_key):
        assert not verify_signature(BODY, device_key.public_pem, "")

    def test_garbage_signature_bytes_fail(self, device_key):
        garbage = base64.b64encode(b"\x00" * 256).decode()
        assert not verify_signature(BODY, device_key.public_pem, garbage)


class TestNormalizePublicKey:
    def test_whitespace_variants_normalize_identically(self, device_key):
        messy = "\n\n  " + device_key.public_pem + "   \n"
        assert normalize_public_key(messy) == normalize_public_key(device_key.public_pem)

    def test_normalized_key_is_spki_pem(self, device_key):
        normalized = normalize_public_key(device_key.public_pem)
        assert normalized.startswith("-----BEGIN PUBLIC KEY-----")

    def test_unparseable_key_returns_none(self):
        assert normalize_public_key("-----BEGIN PUBLIC KEY-----\nAAAA\n-----END PUBLIC KEY-----") is None

    def test_verifier_delegates(self, device_key):
        verifier = SignatureVerifier()
        assert verifier.verify(BODY, device_key.public_pem, device_key.sign(BODY))
        assert verifier.normalize(device_key.public_pem) == device_key.public_pem
