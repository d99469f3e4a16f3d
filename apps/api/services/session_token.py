"""Bearer tokens naming the issuer (and role) behind an API call."""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from jose import JWTError, jwt

from config import settings
from models.issuer import IssuerRole


SESSION_TOKEN_TYPE = "truth_session"


class InvalidSessionTokenError(ValueError):
    pass


@dataclass(frozen=True)
class SessionClaims:
    issuer_id: str
    role: str = IssuerRole.ISSUER
    email: Optional[str] = None


def issue_session_token(
    issuer_id: str,
    *,
    role: str = IssuerRole.ISSUER,
    email: Optional[str] = None,
    ttl_hours: Optional[int] = None,
) -> str:
    now = datetime.now(timezone.utc)
    expires_at = now + timedelta(hours=max(int(ttl_hours or settings.JWT_EXPIRATION_HOURS or 24), 1))
    claims = {"sub": issuer_id, "type": SESSION_TOKEN_TYPE, "role": role, "exp": int(expires_at.timestamp())}
    if email:
        claims["email"] = email
    return jwt.encode(claims, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def read_session_token(token: str) -> SessionClaims:
    """Verify signature, expiry and token type; the role must be a known issuer role."""
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as exc:
        raise InvalidSessionTokenError("Invalid or expired session token.") from exc

    if payload.get("type") != SESSION_TOKEN_TYPE:
        raise InvalidSessionTokenError("Invalid session token type.")
    issuer_id = str(payload.get("sub") or "").strip()
    if not issuer_id:
        raise InvalidSessionTokenError("Session token missing subject.")
    role = str(payload.get("role") or IssuerRole.ISSUER).strip().upper()
    if role not in IssuerRole.ALL:
        raise InvalidSessionTokenError("Session token has an unknown role.")

    return SessionClaims(issuer_id=issuer_id, role=role, email=payload.get("email") or None)
