"""Audit chain verification for the requesting tenant."""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Query

from relay_api.dependencies import SessionDep, TenantDep
from relay_core.state.repository import AuditRepository

router = APIRouter(prefix="/audit", tags=["audit"])


@router.get("/verify")
async def verify_audit_chain(
    session: SessionDep,
    tenant_id: TenantDep,
    limit: int = Query(default=1000, ge=1, le=10000),
) -> dict[str, Any]:
    """Recompute the hash chain over the tenant's oldest *limit* entries."""
    valid, checked = await AuditRepository(session, tenant_id=tenant_id).verify_chain(limit=limit)
    return {"valid": valid, "entriesChecked": checked}
