from __future__ import annotations

from kinship.core.errors import InvariantViolation


def require_tenant_id(tenant_id: str | None) -> str:
    # Tenant-scoped queries must never run without a tenant predicate.
    if not tenant_id:
        raise InvariantViolation("Tenant predicate required but tenant_id is missing")
    return tenant_id


def tenant_predicate(model, tenant_id: str | None) -> object:
    # Build tenant predicates through a single helper to guarantee guard coverage.
    return model.tenant_id == require_tenant_id(tenant_id)
