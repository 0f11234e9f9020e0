from __future__ import annotations

from dataclasses import dataclass

from .errors import TenantScopeError

"""Tenant scoping context supplied by the surrounding system.

Authentication and row isolation belong to the caller. This module only makes
sure no operation runs without a tenant id, and carries the acting user for
attribution on audit events.
"""

__all__ = [
    "TenantContext",
    "require_tenant",
]


@dataclass(frozen=True)
class TenantContext:
    tenant_id: str
    actor_id: str | None = None  # 監査ログ用 (認可判定には使わない)

    def __post_init__(self) -> None:
        require_tenant(self.tenant_id)


def require_tenant(tenant_id: str | None) -> str:
    """Return the tenant id or raise when the scope is missing.

    A query that omits scoping must fail rather than read across tenants.
    """
    if tenant_id is None or not str(tenant_id).strip():
        raise TenantScopeError("tenant id is required for every operation")
    return str(tenant_id)
