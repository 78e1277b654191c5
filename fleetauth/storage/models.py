from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone


DEVICE_STATUS_PENDING = "pending"
DEVICE_STATUS_ACCEPTED = "accepted"
DEVICE_STATUS_REJECTED = "rejected"

DEVICE_STATUSES = frozenset(
    {DEVICE_STATUS_PENDING, DEVICE_STATUS_ACCEPTED, DEVICE_STATUS_REJECTED}
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Device:
    id: str
    identity_data: str
    public_key: str
    status: str = DEVICE_STATUS_PENDING
    tenant_id: str = ""
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        identity_data: str,
        public_key: str,
        *,
        tenant_id: str = "",
    ) -> "Device":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            identity_data=identity_data,
            public_key=public_key,
            status=DEVICE_STATUS_PENDING,
            tenant_id=tenant_id,
            created_at=now,
            updated_at=now,
        )


@dataclass
class Token:
    id: str
    device_id: str
    tenant_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False

    @classmethod
    def new(
        cls,
        device_id: str,
        ttl_minutes: int,
        *,
        tenant_id: str = "",
        now: datetime | None = None,
    ) -> "Token":
        # JWT claims carry whole seconds; keep the record in step with them
        issued = (now or utcnow()).replace(microsecond=0)
        return cls(
            id=str(uuid.uuid4()),
            device_id=device_id,
            tenant_id=tenant_id,
            issued_at=issued,
            expires_at=issued + timedelta(minutes=ttl_minutes),
        )

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and self.expires_at > now
