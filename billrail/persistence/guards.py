from __future__ import annotations

from billrail.core.config import get_settings


class TenantPredicateError(RuntimeError):
    # Surface missing organization predicates when guard enforcement is enabled.
    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


def require_organization_id(organization_id: str | None) -> None:
    # Blank organization ids must fail closed instead of scoping to every tenant.
    settings = get_settings()
    if not settings.authz_require_tenant_predicate:
        return
    if not organization_id:
        raise TenantPredicateError("Organization predicate required but organization_id is missing")


def organization_predicate(model, organization_id: str) -> object:
    # Build organization predicates through a single helper to guarantee guard coverage.
    require_organization_id(organization_id)
    return model.organization_id == organization_id


def livemode_predicate(model, livemode: bool) -> object:
    return model.livemode == livemode
