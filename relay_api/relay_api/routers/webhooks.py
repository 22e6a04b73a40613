"""Inbound CRM webhooks.

Authenticated by tenant header plus optional HMAC signature rather than
the read API's bearer token.
"""

from __future__ import annotations

import logging
from typing import Annotated, Any

from fastapi import APIRouter, Depends, Header, Request

from relay_api.dependencies import (
    CipherDep,
    MetricsDep,
    QueueDep,
    RelaySettingsDep,
    SettingsDep,
)
from relay_api.services.webhook_service import GhlWebhookService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


def get_webhook_service(
    queue: QueueDep,
    cipher: CipherDep,
    metrics: MetricsDep,
    settings: SettingsDep,
    relay_settings: RelaySettingsDep,
) -> GhlWebhookService:
    return GhlWebhookService(
        queue,
        cipher=cipher,
        fallback_secret=relay_settings.ghl_webhook_secret,
        require_signature=settings.require_webhook_signature,
        metrics=metrics,
    )


WebhookServiceDep = Annotated[GhlWebhookService, Depends(get_webhook_service)]


@router.post("/ghl")
async def ghl_webhook(
    request: Request,
    service: WebhookServiceDep,
    x_tenant_id: Annotated[str | None, Header()] = None,
    x_ghl_signature: Annotated[str | None, Header()] = None,
) -> dict[str, Any]:
    """Receive a GHL invoice event and enqueue FETCH_INVOICE for it.

    The raw body is read before parsing so the HMAC covers exactly the
    bytes that were sent.  Repeated deliveries answer
    ``{"ok": true, "duplicate": true}`` without side effects.
    """
    body = await request.body()
    request.state.tenant_id = x_tenant_id or "anonymous"
    return await service.receive(
        x_tenant_id,
        body,
        signature=x_ghl_signature,
        correlation_id=getattr(request.state, "correlation_id", None),
    )
