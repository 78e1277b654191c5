from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fleetauth.logging import get_correlation_id
from fleetauth.storage.models import Device

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "validation_error",
    "conflict",
    "server_error",
})


def _request_id() -> str:
    return get_correlation_id() or str(uuid4())


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=_request_id)


class StatusUpdateRequest(BaseModel):
    # validated against the state machine, not here, so bad values map to
    # "incorrect device status" instead of a decode failure
    status: Optional[str] = None

    model_config = ConfigDict(extra="ignore")


class DeviceResponse(BaseModel):
    id: str
    identity_data: str
    public_key: str
    status: str
    tenant_id: str
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_device(cls, device: Device) -> "DeviceResponse":
        return cls(
            id=device.id,
            identity_data=device.identity_data,
            public_key=device.public_key,
            status=device.status,
            tenant_id=device.tenant_id,
            created_at=device.created_at,
            updated_at=device.updated_at,
        )


class DeviceListResponse(BaseModel):
    items: List[DeviceResponse]
    page: int
    per_page: int
    has_next: bool = False
    next_page: Optional[int] = None
