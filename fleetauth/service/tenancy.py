from __future__ import annotations

from typing import Optional

from fleetauth.config import Settings
from fleetauth.logging import get_logger
from fleetauth.service.jwt_codec import JWTDecodeError, decode_jwt

logger = get_logger(__name__)


class TenantResolver:
    """Turns the optional tenant token on an auth request into a tenant scope.

    Single-tenant deployments always resolve to ``default_tenant_id``. In
    multi-tenant mode a token is mandatory; it is either verified as an HS256
    token carrying a ``tenant_id`` claim or, without a configured secret,
    used verbatim as the scope. ``None`` means no scope could be resolved.
    """

    def __init__(self, settings: Settings) -> None:
        self.settings = settings

    def resolve(self, tenant_token: Optional[str]) -> Optional[str]:
        if not self.settings.multi_tenant:
            return self.settings.default_tenant_id
        token = (tenant_token or "").strip()
        if not token:
            logger.info("tenant_token_missing")
            return None
        secret = self.settings.tenant_token_secret
        if not secret:
            return token
        try:
            claims = decode_jwt(
                token,
                secret,
                leeway_seconds=self.settings.clock_skew_seconds,
                require_exp=False,
            )
        except JWTDecodeError as exc:
            logger.info("tenant_token_rejected", reason=str(exc))
            return None
        tenant_id = claims.get("tenant_id")
        if not isinstance(tenant_id, str) or not tenant_id:
            logger.info("tenant_token_without_tenant")
            return None
        return tenant_id
