from __future__ import annotations

import contextlib
import copy
import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional, Tuple

from fleetauth.logging import get_logger
from fleetauth.storage.errors import ConstraintViolation, StorageUnavailable
from fleetauth.storage.models import (
    DEVICE_STATUS_ACCEPTED,
    DEVICE_STATUS_PENDING,
    Device,
    Token,
    utcnow,
)


class MemoryStore:
    """In-memory device and token store for tests and single-process deployments.

    All reads and writes go through one re-entrant lock, which gives the same
    per-device atomicity the Postgres store gets from unique constraints and
    row locks. Returned records are copies; mutating them has no effect on
    the store.
    """

    def __init__(
        self, state_path: str | None = None, *, lock_timeout: float = 5.0
    ) -> None:
        self.logger = get_logger(__name__)
        self.devices: Dict[str, Device] = {}
        # (tenant_id, identity_data) -> device id
        self.identity_index: Dict[Tuple[str, str], str] = {}
        self.tokens: Dict[str, Token] = {}
        # device id -> unrevoked token ids; expired ones are dropped on the next issue
        self.device_tokens: Dict[str, List[str]] = {}
        self._data_lock = threading.RLock()
        self.lock_timeout = lock_timeout
        self.state_path = Path(state_path) if state_path else None
        if self.state_path:
            self.state_path.parent.mkdir(parents=True, exist_ok=True)
            self._load_state()

    @contextlib.contextmanager
    def _locked(self) -> Iterator[None]:
        if not self._data_lock.acquire(timeout=self.lock_timeout):
            raise StorageUnavailable(
                "memory store lock timed out", {"timeout": self.lock_timeout}
            )
        try:
            yield
        finally:
            self._data_lock.release()

    @contextlib.contextmanager
    def _mutating(self) -> Iterator[None]:
        """Hold the lock and undo in-memory changes if persisting them fails."""
        with self._locked():
            snapshot = self._snapshot() if self.state_path else None
            try:
                yield
            except Exception:
                if snapshot is not None:
                    self._restore(snapshot)
                raise

    def _snapshot(self) -> tuple:
        return copy.deepcopy(
            (self.devices, self.identity_index, self.tokens, self.device_tokens)
        )

    def _restore(self, snapshot: tuple) -> None:
        self.devices, self.identity_index, self.tokens, self.device_tokens = snapshot

    # devices
    def create_or_get_device(
        self, identity_data: str, public_key: str, *, tenant_id: str
    ) -> Tuple[Device, bool]:
        with self._mutating():
            existing_id = self.identity_index.get((tenant_id, identity_data))
            if existing_id:
                return replace(self.devices[existing_id]), False
            device = Device.new(identity_data, public_key, tenant_id=tenant_id)
            self.devices[device.id] = device
            self.identity_index[(tenant_id, identity_data)] = device.id
            self._persist_state()
            return replace(device), True

    def get_device(self, device_id: str, *, tenant_id: str) -> Optional[Device]:
        with self._locked():
            device = self.devices.get(device_id)
            if not device or device.tenant_id != tenant_id:
                return None
            return replace(device)

    def list_devices(
        self,
        *,
        tenant_id: str,
        skip: int = 0,
        limit: int = 100,
        status: Optional[str] = None,
    ) -> List[Device]:
        with self._locked():
            results = [
                d
                for d in self.devices.values()
                if d.tenant_id == tenant_id and (status is None or d.status == status)
            ]
            results.sort(key=lambda d: d.id)
            return [replace(d) for d in results[skip : skip + limit]]

    def update_device_status(
        self, device_id: str, status: str, *, tenant_id: str
    ) -> Optional[Device]:
        with self._mutating():
            device = self.devices.get(device_id)
            if not device or device.tenant_id != tenant_id:
                return None
            if device.status != status:
                device.status = status
                device.updated_at = utcnow()
                self._persist_state()
            return replace(device)

    def update_device_key(
        self, device_id: str, public_key: str, *, tenant_id: str
    ) -> Device:
        with self._mutating():
            device = self.devices.get(device_id)
            if not device or device.tenant_id != tenant_id:
                raise ConstraintViolation(
                    "device not found for key update", {"device_id": device_id}
                )
            device.public_key = public_key
            device.updated_at = utcnow()
            self._persist_state()
            return replace(device)

    # tokens
    def acquire_device_token(self, candidate: Token, *, now: datetime) -> Optional[Token]:
        with self._mutating():
            device = self.devices.get(candidate.device_id)
            if (
                not device
                or device.tenant_id != candidate.tenant_id
                or device.status != DEVICE_STATUS_ACCEPTED
            ):
                return None
            live = [
                token_id
                for token_id in self.device_tokens.get(candidate.device_id, [])
                if self.tokens[token_id].is_live(now)
            ]
            self.device_tokens[candidate.device_id] = live
            if live:
                return replace(self.tokens[live[0]])
            stored = replace(candidate)
            self.tokens[stored.id] = stored
            live.append(stored.id)
            self._persist_state()
            return replace(stored)

    def get_token(self, token_id: str) -> Optional[Token]:
        with self._locked():
            token = self.tokens.get(token_id)
            return replace(token) if token else None

    def revoke_token(self, token_id: str, *, tenant_id: str) -> Optional[Token]:
        with self._mutating():
            token = self.tokens.get(token_id)
            if not token or token.tenant_id != tenant_id:
                return None
            if not token.revoked:
                token.revoked = True
                self._unindex_token(token)
                self._persist_state()
            return replace(token)

    def revoke_device_tokens(self, device_id: str, *, tenant_id: str) -> List[Token]:
        with self._mutating():
            revoked: List[Token] = []
            kept: List[str] = []
            for token_id in self.device_tokens.get(device_id, []):
                token = self.tokens[token_id]
                if token.tenant_id != tenant_id:
                    kept.append(token_id)
                    continue
                token.revoked = True
                revoked.append(replace(token))
            self.device_tokens[device_id] = kept
            if revoked:
                self._persist_state()
            return revoked

    def _unindex_token(self, token: Token) -> None:
        ids = self.device_tokens.get(token.device_id)
        if ids and token.id in ids:
            ids.remove(token.id)

    def close(self) -> None:
        return None

    # persistence
    def _persist_state(self) -> None:
        if not self.state_path:
            return
        state = {
            "devices": [self._serialize_device(d) for d in self.devices.values()],
            "tokens": [self._serialize_token(t) for t in self.tokens.values()],
        }
        try:
            self.state_path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        # read directly instead of exists() to avoid a TOCTOU race
        try:
            data = json.loads(self.state_path.read_text())
        except FileNotFoundError:
            return False
        self.devices = {
            d["id"]: self._deserialize_device(d) for d in data.get("devices", [])
        }
        self.identity_index = {
            (d.tenant_id, d.identity_data): d.id for d in self.devices.values()
        }
        self.tokens = {
            t["id"]: self._deserialize_token(t) for t in data.get("tokens", [])
        }
        self.device_tokens = {}
        for token in self.tokens.values():
            if not token.revoked:
                self.device_tokens.setdefault(token.device_id, []).append(token.id)
        self.logger.info(
            "memory_state_loaded",
            devices=len(self.devices),
            tokens=len(self.tokens),
        )
        return True

    @staticmethod
    def _serialize_device(device: Device) -> dict:
        return {
            "id": device.id,
            "identity_data": device.identity_data,
            "public_key": device.public_key,
            "status": device.status,
            "tenant_id": device.tenant_id,
            "created_at": device.created_at.isoformat(),
            "updated_at": device.updated_at.isoformat(),
        }

    @staticmethod
    def _deserialize_device(data: dict) -> Device:
        return Device(
            id=str(data["id"]),
            identity_data=data["identity_data"],
            public_key=data["public_key"],
            status=data.get("status", DEVICE_STATUS_PENDING),
            tenant_id=data.get("tenant_id", ""),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    @staticmethod
    def _serialize_token(token: Token) -> dict:
        return {
            "id": token.id,
            "device_id": token.device_id,
            "tenant_id": token.tenant_id,
            "issued_at": token.issued_at.isoformat(),
            "expires_at": token.expires_at.isoformat(),
            "revoked": token.revoked,
        }

    @staticmethod
    def _deserialize_token(data: dict) -> Token:
        return Token(
            id=str(data["id"]),
            device_id=str(data["device_id"]),
            tenant_id=data.get("tenant_id", ""),
            issued_at=datetime.fromisoformat(data["issued_at"]),
            expires_at=datetime.fromisoformat(data["expires_at"]),
            revoked=bool(data.get("revoked", False)),
        )
