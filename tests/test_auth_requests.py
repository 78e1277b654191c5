"""Tests for the auth request processor: step ordering and outcomes."""

import json

import pytest

from fleetauth.config import Settings
from fleetauth.service.auth_requests import AuthOutcome, AuthRequestProcessor
from fleetauth.service.devices import DeviceRegistry
from fleetauth.service.errors import (
    MalformedInputError,
    MissingSignatureError,
    SignatureInvalidError,
    ValidationError,
)
from fleetauth.service.jwt_codec import decode_jwt
from fleetauth.service.signature import SignatureVerifier
from fleetauth.service.tenancy import TenantResolver
from fleetauth.service.tokens import TokenAuthority, VerifyResult
from fleetauth.storage.memory import MemoryStore

SECRET = "auth-request-test-secret"


class RecordingVerifier(SignatureVerifier):
    def __init__(self):
        self.calls = 0

    def verify(self, body, public_key_pem, signature):
        self.calls += 1
        return super().verify(body, public_key_pem, signature)


@pytest.fixture
def settings():
    return Settings(jwt_secret=SECRET, multi_tenant=True)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def registry(store):
    return DeviceRegistry(store)


@pytest.fixture
def tokens(store, registry, settings):
    return TokenAuthority(store, registry, settings)


@pytest.fixture
def verifier():
    return RecordingVerifier()


@pytest.fixture
def processor(registry, tokens, settings, verifier):
    return AuthRequestProcessor(registry, tokens, TenantResolver(settings), verifier)


def _body(key, identity="id-0001", tenant_token="t1", **extra) -> bytes:
    payload = {"identity_data": identity, "public_key": key.public_pem, "tenant_token": tenant_token}
    payload.update(extra)
    return json.dumps(payload).encode()


async def test_end_to_end_scenario(processor, registry, tokens, device_key, other_device_key):
    body = _body(device_key)
    first = await processor.submit(body, device_key.sign(body))
    assert first.outcome == AuthOutcome.NOT_ENTITLED
    assert first.token is None

    devices = await registry.list_devices(tenant_id="t1")
    assert len(devices) == 1
    assert devices[0].status == "pending"
    await registry.accept(devices[0].id, tenant_id="t1")

    second = await processor.submit(body, device_key.sign(body))
    assert second.outcome == AuthOutcome.ISSUED
    assert second.token

    other_body = _body(other_device_key, identity="id-0002")
    other = await processor.submit(other_body, other_device_key.sign(other_body))
    other_device = [d for d in await registry.list_devices(tenant_id="t1") if d.identity_data == "id-0002"][0]
    await registry.accept(other_device.id, tenant_id="t1")
    other = await processor.submit(other_body, other_device_key.sign(other_body))
    assert other.token != second.token

    await registry.reject(devices[0].id, tenant_id="t1")
    assert await tokens.verify(second.token) == VerifyResult.INVALID


async def test_first_submission_creates_exactly_one_pending_device(processor, registry, device_key):
    body = _body(device_key)
    for _ in range(3):
        result = await processor.submit(body, device_key.sign(body))
        assert result.outcome == AuthOutcome.NOT_ENTITLED
    devices = await registry.list_devices(tenant_id="t1")
    assert [d.status for d in devices] == ["pending"]


async def test_rejected_and_pending_are_indistinguishable(processor, registry, device_key):
    body = _body(device_key)
    pending = await processor.submit(body, device_key.sign(body))
    await registry.reject(pending.device_id, tenant_id="t1")
    rejected = await processor.submit(body, device_key.sign(body))
    assert pending.outcome == rejected.outcome == AuthOutcome.NOT_ENTITLED
    assert pending.token is None and rejected.token is None


async def test_token_bound_to_device_and_tenant(processor, registry, device_key):
    body = _body(device_key)
    first = await processor.submit(body, device_key.sign(body))
    await registry.accept(first.device_id, tenant_id="t1")
    issued = await processor.submit(body, device_key.sign(body))
    claims = decode_jwt(issued.token, SECRET)
    assert claims["sub"] == first.device_id
    assert claims["tenant_id"] == "t1"


async def test_reissue_returns_same_token(processor, registry, device_key):
    body = _body(device_key)
    first = await processor.submit(body, device_key.sign(body))
    await registry.accept(first.device_id, tenant_id="t1")
    a = await processor.submit(body, device_key.sign(body))
    b = await processor.submit(body, device_key.sign(body))
    assert a.token == b.token


@pytest.mark.parametrize("raw", [b"", b"{", b"[1, 2]", b"\xff\xfe", b'"text"'])
async def test_undecodable_body_is_malformed(processor, verifier, raw):
    with pytest.raises(MalformedInputError) as exc_info:
        await processor.submit(raw, "c2ln")
    assert exc_info.value.message.startswith("failed to decode auth request: ")
    assert verifier.calls == 0


async def test_wrong_field_type_is_malformed(processor):
    body = json.dumps({"identity_data": 5, "public_key": "k"}).encode()
    with pytest.raises(MalformedInputError):
        await processor.submit(body, "c2ln")


async def test_identity_checked_before_public_key(processor, verifier):
    body = json.dumps({"identity_data": "", "public_key": ""}).encode()
    with pytest.raises(ValidationError) as exc_info:
        await processor.submit(body, None)
    assert exc_info.value.message == "invalid auth request: id_data must be provided"
    assert verifier.calls == 0


async def test_missing_public_key(processor):
    body = json.dumps({"identity_data": "id-0001"}).encode()
    with pytest.raises(ValidationError) as exc_info:
        await processor.submit(body, "c2ln")
    assert exc_info.value.message == "invalid auth request: pubkey must be provided"


async def test_wire_aliases_accepted(processor, registry, device_key):
    body = json.dumps(
        {"id_data": "id-0001", "pubkey": device_key.public_pem, "tenant_token": "t1"}
    ).encode()
    result = await processor.submit(body, device_key.sign(body))
    assert result.outcome == AuthOutcome.NOT_ENTITLED
    assert len(await registry.list_devices(tenant_id="t1")) == 1


@pytest.mark.parametrize("signature", [None, "", "   "])
async def test_missing_signature_never_reaches_verifier(processor, verifier, device_key, signature):
    with pytest.raises(MissingSignatureError) as exc_info:
        await processor.submit(_body(device_key), signature)
    assert exc_info.value.message == "missing request signature header"
    assert isinstance(exc_info.value, MalformedInputError)
    assert verifier.calls == 0


async def test_bad_signature_rejected_regardless_of_status(processor, registry, device_key, other_device_key):
    body = _body(device_key)
    first = await processor.submit(body, device_key.sign(body))
    await registry.accept(first.device_id, tenant_id="t1")
    with pytest.raises(SignatureInvalidError):
        await processor.submit(body, other_device_key.sign(body))


async def test_bad_signature_creates_no_device(processor, registry, device_key, other_device_key):
    body = _body(device_key)
    with pytest.raises(SignatureInvalidError):
        await processor.submit(body, other_device_key.sign(body))
    assert await registry.list_devices(tenant_id="t1") == []


async def test_missing_tenant_token_not_entitled(processor, registry, device_key):
    body = _body(device_key, tenant_token=None)
    result = await processor.submit(body, device_key.sign(body))
    assert result.outcome == AuthOutcome.NOT_ENTITLED
    assert await registry.list_devices(tenant_id="t1") == []


async def test_tenants_are_isolated(processor, registry, device_key):
    body_t1 = _body(device_key, tenant_token="t1")
    body_t2 = _body(device_key, tenant_token="t2")
    r1 = await processor.submit(body_t1, device_key.sign(body_t1))
    await registry.accept(r1.device_id, tenant_id="t1")

    r2 = await processor.submit(body_t2, device_key.sign(body_t2))
    assert r2.outcome == AuthOutcome.NOT_ENTITLED
    assert r2.device_id != r1.device_id
    issued = await processor.submit(body_t1, device_key.sign(body_t1))
    assert issued.outcome == AuthOutcome.ISSUED


async def test_accepted_device_rotates_key(processor, registry, device_key, other_device_key):
    body = _body(device_key)
    first = await processor.submit(body, device_key.sign(body))
    await registry.accept(first.device_id, tenant_id="t1")

    rotated_body = _body(other_device_key)
    result = await processor.submit(rotated_body, other_device_key.sign(rotated_body))
    assert result.outcome == AuthOutcome.ISSUED
    device = await registry.get_device(first.device_id, tenant_id="t1")
    assert device.public_key == other_device_key.public_pem


async def test_undecodable_public_key_is_bad_request(processor, registry, verifier, device_key):
    body = json.dumps({"identity_data": "id-x", "public_key": "not a pem key", "tenant_token": "t1"}).encode()
    with pytest.raises(ValidationError) as exc_info:
        await processor.submit(body, device_key.sign(body))
    assert exc_info.value.message == "invalid auth request: cannot decode public key"
    assert verifier.calls == 0
    assert await registry.list_devices(tenant_id="t1") == []
