"""Admin capabilities for privileged ledger operations.

Admins are Supabase users with an active row in admin_users. Each role maps
to a fixed Capability set; ``extra_capabilities`` on the row adds individual
grants on top of the role.

Usage:
    @router.post("/tokens/grant")
    def grant(admin: AdminContext = Depends(require_capability(Capability.EXECUTE_TOKEN_OPERATIONS))):
        ...
"""

import enum
import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from tokenwise_api.auth.session_auth import (
    SessionAuthContext,
    create_auth_problem,
    get_session_auth_context,
)
from tokenwise_api.db.models import AdminUser, utcnow
from tokenwise_api.db.session import get_db

logger = logging.getLogger(__name__)


class Capability(enum.Flag):
    """Individual admin capability."""

    NONE = 0
    VIEW_TOKEN_ANALYTICS = enum.auto()
    VIEW_SUBSCRIPTION_ANALYTICS = enum.auto()
    EXECUTE_TOKEN_OPERATIONS = enum.auto()
    MANAGE_SUBSCRIPTIONS = enum.auto()
    MANAGE_ADMINS = enum.auto()
    VIEW_AUDIT_LOGS = enum.auto()
    EXPORT_DATA = enum.auto()


_ANALYST = (
    Capability.VIEW_TOKEN_ANALYTICS
    | Capability.VIEW_SUBSCRIPTION_ANALYTICS
    | Capability.VIEW_AUDIT_LOGS
    | Capability.EXPORT_DATA
)

_ECONOMIC_ADMIN = (
    Capability.VIEW_TOKEN_ANALYTICS
    | Capability.VIEW_SUBSCRIPTION_ANALYTICS
    | Capability.VIEW_AUDIT_LOGS
    | Capability.EXECUTE_TOKEN_OPERATIONS
    | Capability.MANAGE_SUBSCRIPTIONS
)

ROLE_CAPABILITIES: dict[str, Capability] = {
    "super_admin": _ECONOMIC_ADMIN | _ANALYST | Capability.MANAGE_ADMINS,
    "economic_admin": _ECONOMIC_ADMIN,
    "analyst": _ANALYST,
}


def parse_capabilities(names: Optional[Iterable[str]]) -> Capability:
    """Combine capability names (case-insensitive); unknown names are ignored and logged."""
    result = Capability.NONE
    for name in names or ():
        try:
            result |= Capability[name.upper()]
        except KeyError:
            logger.warning("admin.capability.unknown", extra={"capability": name})
    return result


@dataclass(frozen=True)
class AdminContext:
    """Authenticated admin with resolved capabilities."""

    user_id: str
    role: str
    capabilities: Capability
    email: Optional[str] = None


@dataclass(frozen=True)
class AuthorizationDecision:
    """Result of checking an admin against a required capability set."""

    allowed: bool
    required: Capability
    missing: Capability
    reason: str


def capabilities_for(admin: AdminUser) -> Capability:
    return ROLE_CAPABILITIES.get(admin.role, Capability.NONE) | parse_capabilities(
        admin.extra_capabilities
    )


def authorize(admin: Optional[AdminContext], required: Capability) -> AuthorizationDecision:
    """Decide whether ``admin`` holds every capability in ``required``."""
    if admin is None:
        return AuthorizationDecision(
            allowed=False, required=required, missing=required, reason="not_an_admin"
        )

    missing = required & ~admin.capabilities
    if missing:
        return AuthorizationDecision(
            allowed=False, required=required, missing=missing, reason="missing_capability"
        )
    return AuthorizationDecision(
        allowed=True, required=required, missing=Capability.NONE, reason="granted"
    )


def get_admin_context(
    auth: SessionAuthContext = Depends(get_session_auth_context),
    db: Session = Depends(get_db),
) -> Optional[AdminContext]:
    """Resolve the session user's admin row, or None for non-admins."""
    admin = db.execute(
        select(AdminUser).where(AdminUser.user_id == auth.user_id, AdminUser.is_active.is_(True))
    ).scalar_one_or_none()
    if admin is None:
        return None

    admin.last_access_at = utcnow()
    try:
        db.commit()
    except Exception:
        db.rollback()
        logger.error("admin.last_access.update_failed", exc_info=True)
        raise

    return AdminContext(
        user_id=auth.user_id,
        role=admin.role,
        capabilities=capabilities_for(admin),
        email=auth.email,
    )


def require_capability(required: Capability) -> Callable[..., AdminContext]:
    """Dependency factory: 403 unless the admin holds ``required``."""

    def dependency(
        request: Request,
        admin: Optional[AdminContext] = Depends(get_admin_context),
    ) -> AdminContext:
        decision = authorize(admin, required)
        if not decision.allowed:
            logger.warning(
                "admin.authorization.denied",
                extra={"required": str(required), "missing": str(decision.missing), "reason": decision.reason},
            )
            raise create_auth_problem(
                status_code=status.HTTP_403_FORBIDDEN,
                title="Forbidden",
                detail="Admin access required" if admin is None else "Missing admin capability",
                request=request,
                code="FORBIDDEN",
            )
        return admin

    return dependency
