import hmac
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header
from jose import JWTError, jwt

from payflow.config import Settings, get_settings
from payflow.errors import AuthorizationError, ForbiddenError

ROLES = ("customer", "staff", "admin")


@dataclass
class Claims:
    subject: str
    role: str = "customer"
    tenant_id: Optional[str] = None

    @property
    def is_staff(self) -> bool:
        return self.role in ("staff", "admin")

    def check_tenant(self, tenant_id: str) -> None:
        # Tokens without a tenant are platform-wide.
        if self.tenant_id and self.tenant_id != tenant_id:
            raise ForbiddenError("Token is not valid for this tenant")


def _bearer(authorization: Optional[str]) -> str:
    if not authorization:
        raise AuthorizationError("Invalid or missing token")
    try:
        scheme, token = authorization.split()
    except ValueError:
        raise AuthorizationError("Invalid or missing token")
    if scheme.lower() != "bearer":
        raise AuthorizationError("Invalid or missing token")
    return token


def decode_token(token: str, secret: str) -> Claims:
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except JWTError:
        raise AuthorizationError("Invalid or missing token")

    role = payload.get("role", "customer")
    if role not in ROLES or not payload.get("sub"):
        raise AuthorizationError("Invalid or missing token")
    return Claims(subject=str(payload["sub"]), role=role, tenant_id=payload.get("tenant_id"))


def verify_token(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> Claims:
    return decode_token(_bearer(authorization), settings.require("JWT_SECRET"))


def require_staff(claims: Claims = Depends(verify_token)) -> Claims:
    if not claims.is_staff:
        raise ForbiddenError("Staff role required")
    return claims


def verify_cron_token(
    authorization: Optional[str] = Header(None),
    settings: Settings = Depends(get_settings),
) -> None:
    secret = settings.require("REMINDER_CRON_SECRET")
    token = _bearer(authorization)
    if not hmac.compare_digest(token.encode(), secret.encode()):
        raise AuthorizationError("Invalid cron token")
