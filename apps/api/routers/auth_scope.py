"""Authentication dependencies for issuer scoping."""

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, HTTPException
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from models.issuer import IssuerRole
from services.session_token import InvalidSessionTokenError, read_session_token


auth_scheme = HTTPBearer(auto_error=False)


@dataclass
class AuthContext:
    issuer_id: str
    role: str = IssuerRole.ISSUER
    email: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return self.role == IssuerRole.ADMIN


async def get_auth_context(
    credentials: HTTPAuthorizationCredentials = Depends(auth_scheme),
) -> AuthContext:
    """Resolve the authenticated issuer from a Bearer session token."""
    if not credentials or credentials.scheme.lower() != "bearer":
        raise HTTPException(status_code=401, detail="Missing Bearer session token.")

    try:
        claims = read_session_token(credentials.credentials)
    except InvalidSessionTokenError as exc:
        raise HTTPException(status_code=401, detail=str(exc)) from exc

    return AuthContext(issuer_id=claims.issuer_id, role=claims.role, email=claims.email)


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    if not auth.is_admin:
        raise HTTPException(status_code=403, detail="Administrator role required.")
    return auth
