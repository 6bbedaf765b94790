from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

import jwt
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from stageflow.app.settings import Settings

ADMIN = "admin"
RECRUITER = "recruiter"
HIRING_MANAGER = "hiring_manager"
SERVICE = "service"

ALL_ROLES = frozenset({ADMIN, RECRUITER, HIRING_MANAGER, SERVICE})

# Who may move candidates and who may only look at the pipeline.
STAGE_EDITORS = (ADMIN, RECRUITER)
PIPELINE_VIEWERS = (ADMIN, RECRUITER, HIRING_MANAGER)

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class AuthContext:
    user_id: str
    roles: frozenset[str]
    email: Optional[str] = None

    @property
    def actor(self) -> str:
        """Name written to the stage audit trail."""
        return self.email or self.user_id

    def has_any(self, roles: set[str]) -> bool:
        return not self.roles.isdisjoint(roles)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=detail)


def _decode_claims(token: str, settings: Settings) -> dict:
    try:
        return jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except jwt.InvalidTokenError as exc:
        raise _unauthorized("invalid auth token") from exc


def context_from_claims(claims: dict) -> AuthContext:
    subject = claims.get("sub")
    if not isinstance(subject, str) or not subject.strip():
        raise _unauthorized("token missing subject")

    raw_roles = claims.get("roles", [])
    if not isinstance(raw_roles, list):
        raise _unauthorized("token roles must be a list")
    roles = frozenset(str(role).strip() for role in raw_roles) & ALL_ROLES
    if not roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="token has no known roles",
        )

    email = claims.get("email")
    if not isinstance(email, str) or not email.strip():
        email = None
    return AuthContext(user_id=subject.strip(), roles=roles, email=email and email.strip())


def get_auth_context(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> AuthContext:
    settings: Settings = request.app.state.settings
    if not settings.auth_enabled:
        return AuthContext(user_id="dev-local", roles=ALL_ROLES)
    if not credentials or credentials.scheme.lower() != "bearer":
        raise _unauthorized("missing bearer token")
    return context_from_claims(_decode_claims(credentials.credentials, settings))


def require_roles(*allowed: str) -> Callable[[AuthContext], AuthContext]:
    allowed_set = {role for role in allowed if role}

    def dependency(context: AuthContext = Depends(get_auth_context)) -> AuthContext:
        if allowed_set and not context.has_any(allowed_set):
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"insufficient role. required any of: {sorted(allowed_set)}",
            )
        return context

    return dependency
