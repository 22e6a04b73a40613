"""Tenant invoice status API.

Every endpoint requires ``X-Tenant-Id`` (and the bearer token when one is
configured).  Invoices of other tenants answer 404.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Query
from fastapi.responses import Response

from relay_api.dependencies import ObjectStoreDep, SessionDep, TenantDep
from relay_api.services.invoice_query_service import InvoiceQueryService
from relay_core.models.invoice import InvoiceStatus

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/invoices", tags=["invoices"])


def get_invoice_query_service(session: SessionDep, tenant_id: TenantDep, store: ObjectStoreDep) -> InvoiceQueryService:
    return InvoiceQueryService(session, tenant_id=tenant_id, store=store)


InvoiceQueryDep = Annotated[InvoiceQueryService, Depends(get_invoice_query_service)]


@router.get("")
async def list_invoices(
    service: InvoiceQueryDep,
    status: InvoiceStatus | None = Query(default=None, description="Filter by invoice status."),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
) -> dict[str, Any]:
    """List the tenant's invoices, newest first."""
    return await service.list_invoices(status=status.value if status else None, limit=limit, offset=offset)


@router.get("/{invoice_id}")
async def get_invoice(invoice_id: str, service: InvoiceQueryDep) -> dict[str, Any]:
    return await service.get_invoice(invoice_id)


@router.get("/{invoice_id}/audit")
async def get_invoice_audit(
    invoice_id: str,
    service: InvoiceQueryDep,
    limit: int = Query(default=50, ge=1, le=500),
) -> dict[str, Any]:
    """Audit events of one invoice in write order."""
    return await service.get_audit(invoice_id, limit=limit)


@router.get("/{invoice_id}/artifacts/{kind}")
async def get_invoice_artifact(invoice_id: str, kind: str, service: InvoiceQueryDep) -> Response:
    """Download the latest Factur-X ``pdf`` or CII ``xml``."""
    data, content_type = await service.get_artifact(invoice_id, kind)
    return Response(
        content=data,
        media_type=content_type,
        headers={"Content-Disposition": f'inline; filename="{invoice_id}.{kind}"'},
    )
