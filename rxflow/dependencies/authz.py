# rxflow/dependencies/authz.py
"""
Authorization predicates, called explicitly at the top of each handler and
inside services. They raise typed errors rather than returning booleans.
"""
import logging

from rxflow.core.errors import ForbiddenError, NotFoundError, ValidationError
from rxflow.core.request_context import RequestContext
from rxflow.models.user import RoleName

logger = logging.getLogger(__name__)

ADMIN_ROLES = (RoleName.ADMIN, RoleName.SUPER_ADMIN)
CLINIC_STAFF_ROLES = (RoleName.ADMIN, RoleName.STAFF, RoleName.SUPER_ADMIN)


def require_roles(ctx: RequestContext, *roles: RoleName) -> None:
    """
    Raise ForbiddenError unless the caller holds one of the roles.
    """
    if ctx.role not in roles:
        logger.info(
            "Forbidden: user_id=%s role=%s needs one of %s",
            ctx.user_id,
            ctx.role.value,
            [r.value for r in roles],
        )
        raise ForbiddenError(
            "You do not have permission to perform this action.",
            detail={"required_roles": [r.value for r in roles]},
        )


def can_access_clinic(ctx: RequestContext, clinic_id: int | None) -> bool:
    if ctx.is_super_admin:
        return True
    return ctx.clinic_id is not None and ctx.clinic_id == clinic_id


def ensure_clinic_access(
    ctx: RequestContext,
    clinic_id: int | None,
    entity: str = "Resource",
    code: str = "NOT_FOUND",
) -> None:
    """
    Another clinic's rows are reported as missing, never as forbidden.
    """
    if not can_access_clinic(ctx, clinic_id):
        raise NotFoundError(f"{entity} not found", code=code)


def require_provider(ctx: RequestContext) -> int:
    """
    Return the caller's provider id; PROVIDER users without a linked
    Provider row cannot act on the queue.
    """
    require_roles(ctx, RoleName.PROVIDER)
    if ctx.provider_id is None:
        raise ForbiddenError(
            "Your account is not linked to a provider profile.",
            code="PROVIDER_PROFILE_MISSING",
        )
    return ctx.provider_id


def resolve_clinic_id(ctx: RequestContext, requested: int | None = None) -> int:
    """
    Pick the clinic an operation runs against.

    Clinic users always get their own clinic (a different explicit request is
    treated as not found). SUPER_ADMIN must name one.
    """
    if ctx.is_super_admin:
        if requested is None:
            raise ValidationError("clinic_id is required for platform administrators.", code="CLINIC_REQUIRED")
        return requested
    if requested is not None and requested != ctx.clinic_id:
        raise NotFoundError("Clinic not found", code="CLINIC_NOT_FOUND")
    if ctx.clinic_id is None:
        raise ForbiddenError("Clinic-scoped operation requires a clinic user.")
    return ctx.clinic_id
