"""Plan quotas and the tenant profile lookup used by the core."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(slots=True, frozen=True)
class PlanLimits:
    pages: int
    documents: int
    webhooks: bool = False


PLAN_LIMITS: dict[str, PlanLimits] = {
    "free": PlanLimits(pages=30, documents=5),
    "basic": PlanLimits(pages=50, documents=10),
    "enterprise": PlanLimits(pages=400, documents=50, webhooks=True),
}


def limits_for(plan: str | None) -> PlanLimits:
    """Return the limits for ``plan``; unknown plans get the free tier."""

    return PLAN_LIMITS.get((plan or "").strip().lower(), PLAN_LIMITS["free"])


class FeatureNotAvailable(PermissionError):
    """Raised when a tenant's plan does not include a feature."""


@dataclass(slots=True)
class TenantProfile:
    tenant_id: str
    plan: str
    widget_key: str = ""

    @property
    def limits(self) -> PlanLimits:
        return limits_for(self.plan)

    def require_webhooks(self) -> None:
        if not self.limits.webhooks:
            raise FeatureNotAvailable("This feature is available only for enterprise plan")


class TenantDirectory(Protocol):
    def profile(self, tenant_id: str) -> TenantProfile: ...


class StaticTenantDirectory:
    """Answer every lookup with one plan, optionally overridden per tenant."""

    def __init__(self, plan: str = "free", overrides: dict[str, TenantProfile] | None = None) -> None:
        self._plan = plan
        self._overrides = dict(overrides or {})

    def set_profile(self, profile: TenantProfile) -> None:
        self._overrides[profile.tenant_id] = profile

    def profile(self, tenant_id: str) -> TenantProfile:
        override = self._overrides.get(tenant_id)
        if override is not None:
            return override
        return TenantProfile(tenant_id=tenant_id, plan=self._plan)


__all__ = [
    "PlanLimits",
    "PLAN_LIMITS",
    "limits_for",
    "FeatureNotAvailable",
    "TenantProfile",
    "TenantDirectory",
    "StaticTenantDirectory",
]
