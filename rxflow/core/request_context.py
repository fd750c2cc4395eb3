# rxflow/core/request_context.py
from dataclasses import dataclass

from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.orm import Session

from rxflow.core.database import get_db
from rxflow.core.security import decode_token
from rxflow.models.user import RoleName, User

oauth2_scheme = OAuth2PasswordBearer(tokenUrl="/api/v1/auth/token", auto_error=False)


@dataclass(frozen=True)
class RequestContext:
    """
    Who is calling: passed explicitly into every service call.

    - SUPER_ADMIN: clinic_id is None and may act on any clinic.
    - Clinic users: clinic_id bounds every read and write.
    - PROVIDER users: provider_id links to the Provider row.
    """

    user_id: int | None
    role: RoleName
    clinic_id: int | None
    provider_id: int | None = None

    @property
    def is_super_admin(self) -> bool:
        return self.role == RoleName.SUPER_ADMIN

    @classmethod
    def for_user(cls, user: User) -> "RequestContext":
        return cls(
            user_id=user.id,
            role=RoleName(user.role),
            clinic_id=user.clinic_id,
            provider_id=user.provider_id,
        )

    @classmethod
    def system(cls, clinic_id: int | None = None) -> "RequestContext":
        """Context for webhooks and batch jobs."""
        return cls(user_id=None, role=RoleName.SUPER_ADMIN, clinic_id=clinic_id)


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_request_context(
    token: str | None = Depends(oauth2_scheme),
    db: Session = Depends(get_db),
) -> RequestContext:
    """
    Resolve the caller from a JWT bearer token.

    Role and clinic come from the user row, never from token claims.
    """
    if not token:
        raise _unauthorized("Not authenticated")

    try:
        payload = decode_token(token)
    except ValueError as exc:
        raise _unauthorized(str(exc)) from exc

    subject = payload.get("sub")
    try:
        user_id = int(subject)
    except (TypeError, ValueError):
        raise _unauthorized("Invalid token subject") from None

    user = db.get(User, user_id)
    if not user or not user.is_active:
        raise _unauthorized("User not found or inactive")

    return RequestContext.for_user(user)
