from __future__ import annotations

from typing import Awaitable, Callable, List, Optional, Protocol, Tuple

from fleetauth.logging import get_logger
from fleetauth.service.errors import DeviceNotFoundError, ValidationError
from fleetauth.storage.models import (
    DEVICE_STATUS_ACCEPTED,
    DEVICE_STATUS_PENDING,
    DEVICE_STATUS_REJECTED,
    DEVICE_STATUSES,
    Device,
)

logger = get_logger(__name__)


class DeviceStore(Protocol):
    def create_or_get_device(
        self, identity_data: str, public_key: str, *, tenant_id: str
    ) -> Tuple[Device, bool]: ...

    def get_device(self, device_id: str, *, tenant_id: str) -> Optional[Device]: ...

    def list_devices(
        self,
        *,
        tenant_id: str,
        skip: int = 0,
        limit: int = 100,
        status: Optional[str] = None,
    ) -> List[Device]: ...

    def update_device_status(
        self, device_id: str, status: str, *, tenant_id: str
    ) -> Optional[Device]: ...

    def update_device_key(
        self, device_id: str, public_key: str, *, tenant_id: str
    ) -> Device: ...


StatusListener = Callable[[Device], Awaitable[None]]


def parse_status(value: object) -> str:
    """Validate a requested device status before it reaches the state machine."""
    if not isinstance(value, str) or value not in DEVICE_STATUSES:
        raise ValidationError("incorrect device status", detail={"status": value})
    return value


class DeviceRegistry:
    """Owns device records and the pending/accepted/rejected state machine.

    Every transition is allowed from every state and is idempotent. Listeners
    registered with :meth:`add_status_listener` are awaited after the status
    write and before the transition returns, so token revocation is complete
    by the time the caller is told the device was rejected or reset.
    """

    def __init__(self, store: DeviceStore) -> None:
        self.store = store
        self._listeners: list[StatusListener] = []

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    async def lookup_or_create(
        self, identity_data: str, public_key: str, *, tenant_id: str
    ) -> Device:
        """Find the device for ``identity_data`` in the tenant or create it as pending.

        A key that differs from the registered one replaces it only for an
        accepted device; unapproved identities keep the key they were first
        seen with.
        """
        device, created = self.store.create_or_get_device(
            identity_data, public_key, tenant_id=tenant_id
        )
        if created:
            logger.info("device_created", device_id=device.id, tenant_id=tenant_id)
            return device
        if device.public_key == public_key:
            return device
        if device.status != DEVICE_STATUS_ACCEPTED:
            logger.info(
                "device_key_change_refused",
                device_id=device.id,
                tenant_id=tenant_id,
                status=device.status,
            )
            return device
        rotated = self.store.update_device_key(device.id, public_key, tenant_id=tenant_id)
        logger.info("device_key_rotated", device_id=device.id, tenant_id=tenant_id)
        return rotated

    async def get_device(self, device_id: str, *, tenant_id: str) -> Device:
        device = self.store.get_device(device_id, tenant_id=tenant_id)
        if not device:
            raise DeviceNotFoundError()
        return device

    async def list_devices(
        self,
        *,
        tenant_id: str,
        skip: int = 0,
        limit: int = 100,
        status: Optional[str] = None,
    ) -> List[Device]:
        if status is not None:
            status = parse_status(status)
        return self.store.list_devices(
            tenant_id=tenant_id, skip=skip, limit=limit, status=status
        )

    async def accept(self, device_id: str, *, tenant_id: str) -> Device:
        return await self._transition(device_id, DEVICE_STATUS_ACCEPTED, tenant_id)

    async def reject(self, device_id: str, *, tenant_id: str) -> Device:
        return await self._transition(device_id, DEVICE_STATUS_REJECTED, tenant_id)

    async def reset(self, device_id: str, *, tenant_id: str) -> Device:
        return await self._transition(device_id, DEVICE_STATUS_PENDING, tenant_id)

    async def set_status(self, device_id: str, status: object, *, tenant_id: str) -> Device:
        target = parse_status(status)
        if target == DEVICE_STATUS_ACCEPTED:
            return await self.accept(device_id, tenant_id=tenant_id)
        if target == DEVICE_STATUS_REJECTED:
            return await self.reject(device_id, tenant_id=tenant_id)
        return await self.reset(device_id, tenant_id=tenant_id)

    async def _transition(self, device_id: str, status: str, tenant_id: str) -> Device:
        device = self.store.update_device_status(device_id, status, tenant_id=tenant_id)
        if not device:
            raise DeviceNotFoundError()
        for listener in self._listeners:
            await listener(device)
        logger.info(
            "device_status_changed",
            device_id=device_id,
            tenant_id=tenant_id,
            status=status,
        )
        return device
