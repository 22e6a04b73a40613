"""Invoice relay HTTP boundary: CRM webhooks and the invoice read API."""

__version__ = "0.4.0"
