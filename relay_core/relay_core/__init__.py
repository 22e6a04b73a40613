"""Invoice relay core: durable job pipeline from CRM webhooks to PDP submission."""

__version__ = "0.4.0"
