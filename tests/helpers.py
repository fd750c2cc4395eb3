"""Auth and context helpers shared by unit and integration tests."""
from rxflow.core.request_context import RequestContext
from rxflow.core.security import create_access_token
from rxflow.models.user import RoleName


def auth_headers(user) -> dict:
    token = create_access_token(user.id, clinic_id=user.clinic_id, role=RoleName(user.role).value)
    return {"Authorization": f"Bearer {token}"}


def ctx_for(user) -> RequestContext:
    return RequestContext.for_user(user)
