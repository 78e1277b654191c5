from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Header, Path, Query, Request, Response

from fleetauth.api.schemas import (
    DeviceListResponse,
    DeviceResponse,
    Envelope,
    StatusUpdateRequest,
)
from fleetauth.service.errors import (
    MalformedInputError,
    MissingTokenError,
    NotEntitledError,
    TokenExpiredError,
    TokenInvalidError,
)
from fleetauth.service.pagination import link_header, page_request, paginate
from fleetauth.service.runtime import get_runtime
from fleetauth.service.tokens import VerifyResult


SIGNATURE_HEADER = "X-Device-Signature"
TENANT_HEADER = "X-Tenant-ID"
TOKEN_MEDIA_TYPE = "application/jwt"

devices_router = APIRouter(prefix="/api/devices/v1/authentication", tags=["devices"])
management_router = APIRouter(prefix="/api/management/v1/devauth", tags=["management"])
internal_router = APIRouter(prefix="/api/internal/v1/devauth", tags=["internal"])


def _management_tenant(tenant_header: Optional[str]) -> str:
    # scope is set by the gateway after it authenticated the operator
    if tenant_header and tenant_header.strip():
        return tenant_header.strip()
    return get_runtime().settings.default_tenant_id


def _extract_token(authorization: Optional[str]) -> str:
    raw = (authorization or "").strip()
    scheme, _, rest = raw.partition(" ")
    if rest and scheme.lower() == "bearer":
        raw = rest.strip()
    if not raw:
        raise MissingTokenError()
    return raw


@devices_router.post("/auth_requests")
async def submit_auth_request(
    request: Request,
    signature: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
):
    runtime = get_runtime()
    body = await request.body()
    result = await runtime.auth_requests.submit(body, signature)
    if not result.issued:
        raise NotEntitledError()
    return Response(content=result.token, media_type=TOKEN_MEDIA_TYPE)


@management_router.put("/devices/{device_id}/status", status_code=204)
async def update_device_status(
    request: Request,
    device_id: str = Path(..., max_length=255),
    tenant_header: Optional[str] = Header(default=None, alias=TENANT_HEADER),
):
    runtime = get_runtime()
    tenant_id = _management_tenant(tenant_header)
    raw = await request.body()
    try:
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError("expected a JSON object")
        body = StatusUpdateRequest.model_validate(payload)
    except ValueError as exc:
        # json.JSONDecodeError and pydantic's ValidationError are both ValueErrors
        raise MalformedInputError(f"failed to decode status data: {exc}")
    await runtime.registry.set_status(device_id, body.status, tenant_id=tenant_id)
    return Response(status_code=204)


@management_router.get("/devices/{device_id}", response_model=Envelope)
async def get_device(
    device_id: str = Path(..., max_length=255),
    tenant_header: Optional[str] = Header(default=None, alias=TENANT_HEADER),
):
    runtime = get_runtime()
    device = await runtime.registry.get_device(
        device_id, tenant_id=_management_tenant(tenant_header)
    )
    return Envelope(status="ok", data=DeviceResponse.from_device(device))


@management_router.get("/devices", response_model=Envelope)
async def list_devices(
    request: Request,
    response: Response,
    page: Optional[int] = Query(default=None),
    per_page: Optional[int] = Query(default=None),
    status: Optional[str] = Query(default=None),
    tenant_header: Optional[str] = Header(default=None, alias=TENANT_HEADER),
):
    runtime = get_runtime()
    settings = runtime.settings
    paging = page_request(
        page,
        per_page,
        default_per_page=settings.default_per_page,
        max_per_page=settings.max_per_page,
    )
    fetched = await runtime.registry.list_devices(
        tenant_id=_management_tenant(tenant_header),
        skip=paging.skip,
        limit=paging.limit,
        status=status,
    )
    result = paginate(paging, fetched)
    response.headers["Link"] = link_header(
        request.url.path, result, {"status": status}
    )
    return Envelope(
        status="ok",
        data=DeviceListResponse(
            items=[DeviceResponse.from_device(d) for d in result.items],
            page=result.page,
            per_page=result.per_page,
            has_next=result.has_next,
            next_page=result.next_page,
        ),
    )


@management_router.delete("/tokens/{token_id}", status_code=204)
async def revoke_token(
    token_id: str = Path(..., max_length=255),
    tenant_header: Optional[str] = Header(default=None, alias=TENANT_HEADER),
):
    runtime = get_runtime()
    await runtime.tokens.revoke(token_id, tenant_id=_management_tenant(tenant_header))
    return Response(status_code=204)


@internal_router.post("/tokens/verify")
async def verify_token(authorization: Optional[str] = Header(default=None)):
    runtime = get_runtime()
    result = await runtime.tokens.verify(_extract_token(authorization))
    if result == VerifyResult.EXPIRED:
        raise TokenExpiredError()
    if result != VerifyResult.VALID:
        raise TokenInvalidError()
    return Response(status_code=200)
