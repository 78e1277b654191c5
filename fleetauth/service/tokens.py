from __future__ import annotations

from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Protocol, Union

from fleetauth.config import Settings
from fleetauth.logging import get_logger
from fleetauth.service.devices import DeviceRegistry
from fleetauth.service.errors import DeviceNotFoundError, TokenNotFoundError
from fleetauth.service.jwt_codec import (
    JWTDecodeError,
    JWTExpiredError,
    decode_jwt,
    encode_jwt,
)
from fleetauth.storage.models import DEVICE_STATUS_ACCEPTED, Device, Token
from fleetauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


class TokenStore(Protocol):
    def acquire_device_token(self, candidate: Token, *, now: datetime) -> Optional[Token]:
        """Atomically return the device's live token, or store ``candidate``.

        Returns None when the device does not exist in the candidate's tenant
        or is not accepted at the moment of the check.
        """
        ...

    def get_token(self, token_id: str) -> Optional[Token]: ...

    def revoke_token(self, token_id: str, *, tenant_id: str) -> Optional[Token]: ...

    def revoke_device_tokens(self, device_id: str, *, tenant_id: str) -> List[Token]: ...


class VerifyResult(str, Enum):
    VALID = "valid"
    EXPIRED = "expired"
    INVALID = "invalid"


class TokenAuthority:
    """Issues, verifies and revokes device tokens.

    At most one live token exists per device; issuing again returns the
    same serialized token until it is revoked or expires. Verification
    re-reads the bound device so a token of a rejected or reset device fails
    even if its own revocation never happened.
    """

    def __init__(
        self,
        store: TokenStore,
        registry: DeviceRegistry,
        settings: Settings,
        cache: Optional[Union[RedisCache, SyncRedisCache]] = None,
    ) -> None:
        self.store: TokenStore = store
        self.registry = registry
        self.settings = settings
        self.cache = cache
        self._clock_skew_leeway = timedelta(seconds=settings.clock_skew_seconds)
        registry.add_status_listener(self.on_device_status_changed)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def serialize(self, token: Token) -> str:
        claims = {
            "jti": token.id,
            "sub": token.device_id,
            "tenant_id": token.tenant_id,
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "iat": int(token.issued_at.timestamp()),
            "exp": int(token.expires_at.timestamp()),
        }
        return encode_jwt(claims, self.settings.jwt_secret)

    async def issue(self, device_id: str, *, tenant_id: str) -> Optional[str]:
        """Return a serialized token for an accepted device, or None otherwise."""
        try:
            device = await self.registry.get_device(device_id, tenant_id=tenant_id)
        except DeviceNotFoundError:
            return None
        if device.status != DEVICE_STATUS_ACCEPTED:
            return None
        now = self._now()
        candidate = Token.new(
            device.id,
            self.settings.token_ttl_minutes,
            tenant_id=tenant_id,
            now=now,
        )
        token = self.store.acquire_device_token(candidate, now=now)
        if token is None:
            # status changed between the read above and the atomic acquire
            return None
        if token.id == candidate.id:
            logger.info(
                "token_issued",
                token_id=token.id,
                device_id=device.id,
                tenant_id=tenant_id,
                expires_at=token.expires_at.isoformat(),
            )
        else:
            logger.debug("token_reused", token_id=token.id, device_id=device.id)
        return self.serialize(token)

    async def verify(self, raw_token: str) -> VerifyResult:
        """Classify a presented token as valid, expired or invalid.

        Revocation and the bound device's status take precedence over
        expiry: a token of a rejected or reset device is invalid even after
        its validity window has passed.
        """
        now = self._now()
        expired = False
        try:
            claims = decode_jwt(
                raw_token,
                self.settings.jwt_secret,
                issuer=self.settings.jwt_issuer,
                audience=self.settings.jwt_audience,
                leeway_seconds=self._clock_skew_leeway.total_seconds(),
                now=now.timestamp(),
            )
        except JWTExpiredError as exc:
            # genuine signature; still check the record before calling it expired
            claims = exc.payload
            expired = True
        except JWTDecodeError as exc:
            logger.debug("token_undecodable", reason=str(exc))
            return VerifyResult.INVALID

        token = await self._live_record(claims)
        if token is None:
            return VerifyResult.INVALID
        if expired or token.expires_at <= now - self._clock_skew_leeway:
            return VerifyResult.EXPIRED
        return VerifyResult.VALID

    async def _live_record(self, claims: dict) -> Optional[Token]:
        """The stored token behind ``claims`` if it is unrevoked and its device accepted."""
        token_id = claims.get("jti")
        if not isinstance(token_id, str) or not token_id:
            return None
        if await self._is_denylisted(token_id):
            return None

        token = self.store.get_token(token_id)
        if not token or token.revoked:
            return None
        if claims.get("sub") != token.device_id or claims.get("tenant_id") != token.tenant_id:
            return None

        try:
            device = await self.registry.get_device(token.device_id, tenant_id=token.tenant_id)
        except DeviceNotFoundError:
            return None
        if device.status != DEVICE_STATUS_ACCEPTED:
            return None
        return token

    async def revoke(self, token_id: str, *, tenant_id: str) -> Token:
        token = self.store.revoke_token(token_id, tenant_id=tenant_id)
        if not token:
            raise TokenNotFoundError()
        await self._denylist(token)
        logger.info("token_revoked", token_id=token_id, tenant_id=tenant_id)
        return token

    async def on_device_status_changed(self, device: Device) -> None:
        if device.status == DEVICE_STATUS_ACCEPTED:
            return
        revoked = self.store.revoke_device_tokens(device.id, tenant_id=device.tenant_id)
        for token in revoked:
            await self._denylist(token)
        if revoked:
            logger.info(
                "device_tokens_revoked",
                device_id=device.id,
                tenant_id=device.tenant_id,
                count=len(revoked),
            )

    async def _denylist(self, token: Token) -> None:
        if not self.cache:
            return
        ttl = int((token.expires_at - self._now()).total_seconds())
        if ttl <= 0:
            return
        try:
            await self.cache.denylist_token(token.id, ttl)
        except Exception as exc:
            # the store already holds the revocation
            logger.warning("token_denylist_failed", token_id=token.id, error=str(exc))

    async def _is_denylisted(self, token_id: str) -> bool:
        if not self.cache:
            return False
        try:
            return await self.cache.is_token_denylisted(token_id)
        except Exception as exc:
            logger.warning("token_denylist_check_failed", token_id=token_id, error=str(exc))
            return False
