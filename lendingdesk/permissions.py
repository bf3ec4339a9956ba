from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, FrozenSet, Iterable, List, Optional, Sequence

from sqlmodel import Session

from .errors import Forbidden, Unauthorized
from .models import Tenant, TenantStatus, User, UserRole


@dataclass(frozen=True)
class RoleDefinition:
    key: str
    label: str
    description: str = ""


ROLES: List[RoleDefinition] = [
    RoleDefinition(
        key=UserRole.SUPER_ADMIN.value,
        label="Super admin",
        description="Operates every tenant; may scope a request with tenant_id.",
    ),
    RoleDefinition(
        key=UserRole.ADMIN.value,
        label="Administrator",
        description="Manages users, deletes records and runs every ledger operation in the tenant.",
    ),
    RoleDefinition(
        key=UserRole.OPERATOR.value,
        label="Operator",
        description="Registers clients, accounts, deposits, loans and payments.",
    ),
    RoleDefinition(
        key=UserRole.VIEWER.value,
        label="Viewer",
        description="Read-only access to the tenant's records.",
    ),
]

ROLE_MAP: Dict[str, RoleDefinition] = {role.key: role for role in ROLES}

READ_ROLES: Sequence[UserRole] = (UserRole.ADMIN, UserRole.OPERATOR, UserRole.VIEWER)
WRITE_ROLES: Sequence[UserRole] = (UserRole.ADMIN, UserRole.OPERATOR)
ADMIN_ROLES: Sequence[UserRole] = (UserRole.ADMIN,)
SUPER_ADMIN_ROLES: Sequence[UserRole] = (UserRole.SUPER_ADMIN,)

# Paths a suspended tenant can still reach (matched as substrings of the request path).
SUSPENDED_ALLOWED_PATHS: Sequence[str] = ("/auth/me", "/tenant/subscription", "/support/tickets")


@dataclass(frozen=True)
class RequestContext:
    """Who is calling and which tenant the request is scoped to."""

    user_id: int
    email: str
    role: UserRole
    tenant_id: Optional[int]
    is_super_admin: bool = False
    tenant_status: Optional[TenantStatus] = None

    def allows(self, roles: Iterable[UserRole]) -> bool:
        if self.is_super_admin:
            return True
        return self.role in frozenset(roles)


def resolve_request_context(
    session: Session,
    user: Optional[User],
    *,
    path: str,
    tenant_override: Optional[int] = None,
) -> RequestContext:
    if user is None or not user.is_active:
        raise Unauthorized("User not found")

    if user.role == UserRole.SUPER_ADMIN:
        return RequestContext(
            user_id=user.id,
            email=user.email,
            role=user.role,
            tenant_id=tenant_override,
            is_super_admin=True,
        )

    if user.tenant_id is None:
        raise Forbidden("User is not associated with any tenant")
    tenant = session.get(Tenant, user.tenant_id)
    if tenant is None:
        raise Forbidden("Tenant not found")

    if tenant.status == TenantStatus.SUSPENDED and not is_allowed_while_suspended(path):
        raise Forbidden(
            "Account suspended. Settle the subscription to continue.",
            details={"code": "ACCOUNT_SUSPENDED"},
        )

    return RequestContext(
        user_id=user.id,
        email=user.email,
        role=user.role,
        tenant_id=tenant.id,
        tenant_status=tenant.status,
    )


def is_allowed_while_suspended(path: str) -> bool:
    return any(allowed in path for allowed in SUSPENDED_ALLOWED_PATHS)


def ensure_roles(ctx: RequestContext, roles: Iterable[UserRole]) -> None:
    allowed: FrozenSet[UserRole] = frozenset(roles)
    if not ctx.allows(allowed):
        raise Forbidden("Access denied for the current role")


def in_tenant_scope(row_tenant_id: Optional[int], tenant_id: Optional[int]) -> bool:
    """A ``None`` scope (super admin without override) sees every tenant."""
    return tenant_id is None or row_tenant_id == tenant_id
