from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from jose import JWTError, jwt

from console_core.core.config import Settings, get_settings


@dataclass
class TokenClaims:
    sub: str
    email: str | None = None
    expires_at: datetime | None = None
    metadata: dict[str, Any] = field(default_factory=dict)

    def is_expired(self, now: datetime | None = None) -> bool:
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or datetime.now(timezone.utc))


def issue_access_token(
    user_id: str,
    email: str | None = None,
    metadata: dict[str, Any] | None = None,
    ttl_seconds: int | None = None,
) -> str:
    settings = get_settings()
    ttl = settings.access_token_ttl_seconds if ttl_seconds is None else ttl_seconds
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=ttl)
    payload: dict[str, Any] = {
        "sub": user_id,
        "email": email,
        "exp": int(expires_at.timestamp()),
        "user_metadata": metadata or {},
    }
    return jwt.encode(payload, settings.jwt_secret, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str, settings: Settings | None = None) -> TokenClaims | None:
    """Return the token claims, or ``None`` when the token is unusable.

    Expiry is reported through ``TokenClaims.is_expired`` rather than
    rejected here, so callers can tell a stale session from a forged one.
    """

    if not token:
        return None

    settings = settings or get_settings()
    try:
        if settings.jwt_verify_signature:
            payload = jwt.decode(
                token,
                settings.jwt_secret,
                algorithms=[settings.jwt_algorithm],
                options={"verify_exp": False, "verify_aud": False},
            )
        else:
            payload = jwt.get_unverified_claims(token)
    except JWTError:
        return None

    subject = payload.get("sub")
    if not subject:
        return None

    exp = payload.get("exp")
    expires_at = datetime.fromtimestamp(int(exp), tz=timezone.utc) if exp is not None else None
    metadata = payload.get("user_metadata")
    return TokenClaims(
        sub=str(subject),
        email=payload.get("email"),
        expires_at=expires_at,
        metadata=metadata if isinstance(metadata, dict) else {},
    )
