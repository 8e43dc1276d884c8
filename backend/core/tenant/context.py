from __future__ import annotations

from fastapi import Header, HTTPException, status

from backend.core.observability.logging import set_tenant_id
from backend.core.observability.metrics import increment_tenant_validation_failure
from backend.core.tenant import validator

_FAILURES = {
    "missing": (status.HTTP_401_UNAUTHORIZED, "tenant_missing"),
    "malformed": (status.HTTP_401_UNAUTHORIZED, "tenant_malformed"),
    "unknown": (status.HTTP_403_FORBIDDEN, "tenant_unknown"),
}


class HeaderMembership:
    """Membership resolution from the ``X-Tenant-ID`` header value."""

    def resolve_tenant(self, caller: str | None) -> str:
        res = validator.validate_tenant(caller)
        if not res.ok:
            increment_tenant_validation_failure(res.reason)
            code = _FAILURES[res.reason]
            raise HTTPException(status_code=code[0], detail={"error": code[1], "detail": res.reason})
        return res.tenant_id  # type: ignore[return-value]


membership = HeaderMembership()


async def require_tenant(
    tenant_header: str | None = Header(None, alias="X-Tenant-ID", convert_underscores=False)
) -> str:
    """FastAPI dependency: tenant of the caller, bound to the log context."""
    tenant_id = membership.resolve_tenant(tenant_header)
    set_tenant_id(tenant_id)
    return tenant_id
