from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from fleetauth.logging import get_logger
from fleetauth.service.devices import DeviceRegistry
from fleetauth.service.errors import (
    MalformedInputError,
    MissingSignatureError,
    SignatureInvalidError,
    ValidationError,
)
from fleetauth.service.signature import SignatureVerifier
from fleetauth.service.tenancy import TenantResolver
from fleetauth.service.tokens import TokenAuthority

logger = get_logger(__name__)


class AuthRequest(BaseModel):
    """Decoded body of a device authentication request."""

    identity_data: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("identity_data", "id_data")
    )
    public_key: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("public_key", "pubkey")
    )
    tenant_token: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class AuthOutcome(str, Enum):
    ISSUED = "issued"
    NOT_ENTITLED = "not_entitled"


@dataclass
class AuthResult:
    outcome: AuthOutcome
    token: Optional[str] = None
    device_id: Optional[str] = None

    @property
    def issued(self) -> bool:
        return self.outcome == AuthOutcome.ISSUED


def parse_auth_request(raw_body: bytes) -> AuthRequest:
    try:
        payload = json.loads(raw_body)
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedInputError(f"failed to decode auth request: {exc}")
    if not isinstance(payload, dict):
        raise MalformedInputError(
            "failed to decode auth request: expected a JSON object"
        )
    try:
        return AuthRequest.model_validate(payload)
    except PydanticValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        loc = ".".join(str(part) for part in errors[0]["loc"]) if errors else "body"
        msg = errors[0]["msg"] if errors else "invalid payload"
        raise MalformedInputError(
            f"failed to decode auth request: {loc}: {msg}",
            detail={"errors": errors},
        )


def validate_auth_request(request: AuthRequest) -> None:
    if not request.identity_data or not request.identity_data.strip():
        raise ValidationError("invalid auth request: id_data must be provided")
    if not request.public_key or not request.public_key.strip():
        raise ValidationError("invalid auth request: pubkey must be provided")


class AuthRequestProcessor:
    """Runs a device authentication request through decode, checks and issuance.

    Steps short-circuit in a fixed order: decode, required fields, public
    key decoding, signature presence, signature validity, tenant scope,
    device lookup and finally issuance. Unknown, pending and rejected devices
    all produce the same ``NOT_ENTITLED`` outcome.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        tokens: TokenAuthority,
        tenants: TenantResolver,
        verifier: SignatureVerifier,
    ) -> None:
        self.registry = registry
        self.tokens = tokens
        self.tenants = tenants
        self.verifier = verifier

    async def submit(self, raw_body: bytes, signature: Optional[str]) -> AuthResult:
        request = parse_auth_request(raw_body)
        validate_auth_request(request)
        public_key = self.verifier.normalize(request.public_key)
        if public_key is None:
            raise ValidationError("invalid auth request: cannot decode public key")
        if not signature or not signature.strip():
            raise MissingSignatureError()
        if not self.verifier.verify(raw_body, public_key, signature.strip()):
            raise SignatureInvalidError()

        tenant_id = self.tenants.resolve(request.tenant_token)
        if tenant_id is None:
            return AuthResult(AuthOutcome.NOT_ENTITLED)

        device = await self.registry.lookup_or_create(
            request.identity_data, public_key, tenant_id=tenant_id
        )
        token = await self.tokens.issue(device.id, tenant_id=tenant_id)
        if token is None:
            logger.info(
                "auth_request_not_entitled",
                device_id=device.id,
                tenant_id=tenant_id,
                status=device.status,
            )
            return AuthResult(AuthOutcome.NOT_ENTITLED, device_id=device.id)
        return AuthResult(AuthOutcome.ISSUED, token=token, device_id=device.id)
