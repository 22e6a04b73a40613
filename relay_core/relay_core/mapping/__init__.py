"""CRM payload to canonical invoice mapping."""

from relay_core.mapping.ghl import map_ghl_to_canonical, normalize_country, normalize_currency

__all__ = ["map_ghl_to_canonical", "normalize_country", "normalize_currency"]
