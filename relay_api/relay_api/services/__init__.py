"""Request-scoped services behind the API routers."""

from __future__ import annotations

from relay_api.services.invoice_query_service import InvoiceQueryService
from relay_api.services.webhook_service import GhlWebhookService

__all__ = ["GhlWebhookService", "InvoiceQueryService"]
