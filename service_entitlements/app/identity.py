"""
Identity adapter for Entitlements Service.

Turns the identity provider's HS256 bearer token into an Account plus the
session and role information the routes need.
"""

from __future__ import annotations

import hmac
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Set

from fastapi import Request
from jose import JWTError, jwt

from shared.errors import AuthorizationError, IdentityMissing
from shared.logging import get_logger, set_account_context
from .resolver.models import Account

ADMIN_ROLE = "admin"


@dataclass(frozen=True)
class Identity:
    """Authenticated caller derived from a verified JWT."""

    account: Account
    session_id: str
    roles: Set[str]

    @property
    def is_admin(self) -> bool:
        return ADMIN_ROLE in self.roles


def _parse_created_at(value: Any) -> datetime:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    if isinstance(value, str) and value:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise IdentityMissing("Token missing account creation time")


class IdentityVerifier:
    """Validates bearer tokens signed with the shared identity secret."""

    def __init__(self, secret: str, audience: Optional[str] = None, algorithm: str = "HS256") -> None:
        self.secret = secret
        self.audience = audience
        self.algorithm = algorithm
        self.logger = get_logger("entitlements.identity")

    async def authenticate(self, request: Request) -> Identity:
        """Authenticate the request; raise IdentityMissing when it carries no valid token."""
        authorization = request.headers.get("Authorization")
        if not authorization or not authorization.startswith("Bearer "):
            raise IdentityMissing("Missing or invalid Authorization header")

        token = authorization[7:].strip()
        if not token:
            raise IdentityMissing("Authorization header contained empty bearer token")

        identity = self.verify(token)
        set_account_context(account_id=identity.account.account_id, session_id=identity.session_id)
        request.state.identity = identity
        return identity

    async def authenticate_optional(self, request: Request) -> Optional[Identity]:
        """Like authenticate, but an absent or unusable token means no account."""
        try:
            return await self.authenticate(request)
        except IdentityMissing as exc:
            self.logger.info("Request without usable identity", reason=exc.message)
            return None

    async def require_admin(self, request: Request) -> Identity:
        identity = await self.authenticate(request)
        if not identity.is_admin:
            raise AuthorizationError(
                "Administrator role required",
                details={"roles": sorted(identity.roles)},
            )
        return identity

    def verify(self, token: str) -> Identity:
        """Validate the JWT and map its claims."""
        options: Dict[str, Any] = {"verify_aud": self.audience is not None}
        try:
            claims = jwt.decode(
                token,
                self.secret,
                algorithms=[self.algorithm],
                audience=self.audience,
                options=options,
            )
        except JWTError as exc:
            raise IdentityMissing("JWT validation failed", details={"error": str(exc)}) from exc

        subject = claims.get("sub")
        email = claims.get("email")
        if not isinstance(subject, str) or not subject:
            raise IdentityMissing("JWT missing subject claim")
        if not isinstance(email, str) or not email:
            raise IdentityMissing("JWT missing email claim")

        account = Account(
            account_id=subject,
            email=email,
            created_at=_parse_created_at(claims.get("created_at")),
        )
        session_id = claims.get("session_id") or claims.get("sid") or subject
        return Identity(account=account, session_id=str(session_id), roles=self._extract_roles(claims))

    def _extract_roles(self, claims: Dict[str, Any]) -> Set[str]:
        """Collect roles from top-level and app_metadata claims."""
        roles: Set[str] = set()

        direct_roles = claims.get("roles")
        if isinstance(direct_roles, list):
            roles.update(role for role in direct_roles if isinstance(role, str))

        app_metadata = claims.get("app_metadata", {})
        if isinstance(app_metadata, dict):
            role = app_metadata.get("role")
            if isinstance(role, str):
                roles.add(role)
            if app_metadata.get("is_admin") is True:
                roles.add(ADMIN_ROLE)

        return roles


WEBHOOK_SECRET_HEADER = "X-Billing-Webhook-Secret"


def verify_webhook_secret(request: Request, secret: str) -> None:
    """Accept provider events only when they carry the configured shared secret."""
    if not secret:
        raise AuthorizationError("Billing events are not accepted: no webhook secret configured")
    supplied = request.headers.get(WEBHOOK_SECRET_HEADER, "")
    if not hmac.compare_digest(supplied.encode(), secret.encode()):
        raise AuthorizationError("Invalid billing webhook secret")
