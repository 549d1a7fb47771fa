from __future__ import annotations

import time
from dataclasses import dataclass

import jwt

ROLES = ("user", "vendor", "admin", "superadmin")
ADMIN_ROLES = frozenset({"admin", "superadmin"})


class AuthError(RuntimeError):
    pass


class AuthConfigError(AuthError):
    pass


@dataclass(frozen=True)
class AuthIdentity:
    user_id: str
    role: str

    @property
    def is_admin(self) -> bool:
        return self.role in ADMIN_ROLES


def normalize_role(role: str) -> str:
    normalized = str(role or "user").strip().lower()
    if normalized not in ROLES:
        return "user"
    return normalized


def issue_access_token(identity: AuthIdentity, secret: str, ttl_seconds: int = 3600) -> str:
    if not secret:
        raise AuthConfigError("AUTH_TOKEN_SECRET is missing")
    now = int(time.time())
    payload = {
        "sub": identity.user_id,
        "role": normalize_role(identity.role),
        "iat": now,
        "exp": now + max(60, int(ttl_seconds)),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def decode_access_token(token: str, secret: str) -> AuthIdentity:
    if not secret:
        raise AuthConfigError("AUTH_TOKEN_SECRET is missing")
    try:
        payload = jwt.decode(token, secret, algorithms=["HS256"])
    except jwt.ExpiredSignatureError as exc:
        raise AuthError("token expired") from exc
    except jwt.InvalidTokenError as exc:
        raise AuthError("invalid token") from exc

    user_id = str(payload.get("sub") or "").strip()
    if not user_id:
        raise AuthError("invalid token subject")
    return AuthIdentity(user_id=user_id, role=normalize_role(str(payload.get("role") or "user")))


def extract_bearer_token(authorization: str | None) -> str:
    raw = str(authorization or "").strip()
    if not raw:
        raise AuthError("missing Authorization header")
    prefix = "Bearer "
    if not raw.startswith(prefix):
        raise AuthError("invalid Authorization header")
    token = raw[len(prefix):].strip()
    if not token:
        raise AuthError("empty bearer token")
    return token
