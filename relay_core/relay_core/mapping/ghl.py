"""Map a raw GHL invoice payload onto the canonical invoice.

GHL payloads vary by account and API version, so every field is looked up
under several candidate names.  Numeric fields are coerced leniently: bad
values fall back to defaults and out-of-range values clamp to zero instead
of being rejected.  The result is validated before it is returned; a
payload that still cannot form a valid canonical invoice raises
:class:`~relay_core.errors.CanonicalValidationError`.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import UTC, datetime
from typing import Any

from relay_core.models.canonical import TOTAL_TOLERANCE, CanonicalInvoice

logger = logging.getLogger(__name__)

DEFAULT_COUNTRY = "FR"
DEFAULT_CURRENCY = "EUR"

_COUNTRY_RE = re.compile(r"^[A-Z]{2}$")
_CURRENCY_RE = re.compile(r"^[A-Z]{3}$")
_DATE_PREFIX_RE = re.compile(r"^\d{4}-\d{2}-\d{2}")


# ---------------------------------------------------------------------------
# Coercion helpers
# ---------------------------------------------------------------------------


def _pick(source: dict[str, Any] | None, *names: str) -> Any:
    """Return the first non-``None`` value among *names* in *source*."""
    if not source:
        return None
    for name in names:
        value = source.get(name)
        if value is not None:
            return value
    return None


def _as_str(value: Any, fallback: str = "") -> str:
    if isinstance(value, str) and value.strip():
        return value.strip()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return fallback


def _as_float(value: Any, fallback: float = 0.0) -> float:
    if isinstance(value, bool):
        return fallback
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip().replace(",", "."))
        except ValueError:
            return fallback
    else:
        return fallback
    return number if math.isfinite(number) else fallback


def _as_date(value: Any) -> str:
    text = _as_str(value)
    if _DATE_PREFIX_RE.match(text):
        return text[:10]
    return datetime.now(UTC).date().isoformat()


def _as_date_or_none(value: Any) -> str | None:
    text = _as_str(value)
    return text[:10] if _DATE_PREFIX_RE.match(text) else None


def normalize_country(value: Any) -> str:
    """Upper-case 2-letter code, else :data:`DEFAULT_COUNTRY`."""
    code = _as_str(value).upper()
    return code if _COUNTRY_RE.match(code) else DEFAULT_COUNTRY


def normalize_currency(value: Any) -> str:
    """Upper-case 3-letter code, else :data:`DEFAULT_CURRENCY`."""
    code = _as_str(value).upper()
    return code if _CURRENCY_RE.match(code) else DEFAULT_CURRENCY


def _clamp_non_negative(value: float) -> float:
    return value if value >= 0 else 0.0


def _normalize_tax_rate(value: float) -> float:
    """Rates are fractions; anything outside [0, 1] clamps to 0."""
    return value if 0.0 <= value <= 1.0 else 0.0


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


def _map_party(source: Any, fallback_name: str, extra_name: Any = None) -> dict[str, Any]:
    party = source if isinstance(source, dict) else {}
    address = party.get("address") if isinstance(party.get("address"), dict) else {}
    return {
        "name": _as_str(_pick(party, "name", "fullName", "companyName", "company"), _as_str(extra_name, fallback_name)),
        "country": normalize_country(_pick(party, "country", "countryCode") or _pick(address, "country", "countryCode")),
        "vat_id": _as_str(_pick(party, "vatId", "vatNumber", "taxId")) or None,
        "siren": _as_str(_pick(party, "siren", "siret")) or None,
        "address_line": _as_str(_pick(address, "line1", "addressLine1", "street") or _pick(party, "address1")) or None,
        "postal_code": _as_str(_pick(address, "postalCode", "zip") or _pick(party, "postalCode")) or None,
        "city": _as_str(_pick(address, "city") or _pick(party, "city")) or None,
        "email": _as_str(_pick(party, "email")) or None,
    }


def _map_lines(record: dict[str, Any], reported_total: float) -> list[dict[str, Any]]:
    raw_lines: list[Any] = []
    for name in ("lines", "items", "products", "invoiceItems"):
        candidate = record.get(name)
        if isinstance(candidate, list) and candidate:
            raw_lines = candidate
            break

    lines: list[dict[str, Any]] = []
    for raw in raw_lines:
        row = raw if isinstance(raw, dict) else {}
        quantity = _as_float(_pick(row, "quantity", "qty"), 1.0)
        lines.append(
            {
                "description": _as_str(_pick(row, "description", "name", "title", "label"), "Item"),
                "quantity": quantity if quantity > 0 else 1.0,
                "unit_price": _clamp_non_negative(_as_float(_pick(row, "unitPrice", "price", "amount"), 0.0)),
                "tax_rate": _normalize_tax_rate(_as_float(_pick(row, "taxRate", "vatRate", "tax"), 0.0)),
            }
        )

    if not lines:
        lines.append(
            {
                "description": "Item",
                "quantity": 1.0,
                "unit_price": _clamp_non_negative(reported_total),
                "tax_rate": 0.0,
            }
        )
    return lines


def _line_sum(lines: list[dict[str, Any]]) -> float:
    return sum(line["quantity"] * line["unit_price"] * (1 + line["tax_rate"]) for line in lines)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def map_ghl_to_canonical(tenant_id: str, raw: dict[str, Any]) -> CanonicalInvoice:
    """Build and validate the canonical invoice for *raw*.

    Parameters
    ----------
    tenant_id:
        Owner of the invoice.
    raw:
        The GHL payload as stored on the invoice row.

    Returns
    -------
    CanonicalInvoice
        The validated canonical invoice.  Its ``total_amount`` is the
        reported total when that agrees with the lines within 0.01, the
        computed total otherwise.
    """
    record = raw.get("invoice") if isinstance(raw.get("invoice"), dict) else raw

    reported = _pick(record, "totalAmount", "amount", "total")
    reported_total = _clamp_non_negative(_as_float(reported, 0.0))
    discount = _clamp_non_negative(_as_float(_pick(record, "discount", "discountTotal", "discountAmount"), 0.0))

    lines = _map_lines(record, reported_total)
    computed = _line_sum(lines) - discount
    if computed < 0:
        # A discount larger than the lines cannot be represented; drop it.
        logger.warning("Discount %.2f exceeds line sum; ignoring discount", discount)
        discount = 0.0
        computed = _line_sum(lines)

    if reported is not None and abs(reported_total - computed) <= TOTAL_TOLERANCE:
        total = reported_total
    else:
        if reported is not None:
            logger.info(
                "Reported total %.2f disagrees with computed %.2f; using computed",
                reported_total,
                computed,
            )
        total = round(computed, 2)

    canonical = {
        "tenant_id": tenant_id,
        "invoice_number": _as_str(_pick(record, "invoiceNumber", "number", "invoice_id", "id"), "INV-UNKNOWN"),
        "issue_date": _as_date(_pick(record, "issueDate", "date", "updatedAt")),
        "due_date": _as_date_or_none(_pick(record, "dueDate")),
        "currency": normalize_currency(_pick(record, "currency", "currencyCode")),
        "total_amount": total,
        "discount_total": discount,
        "buyer": _map_party(_pick(record, "customer", "contact", "buyer"), "Buyer"),
        "seller": _map_party(_pick(record, "seller", "businessDetails"), "Seller", record.get("company")),
        "lines": lines,
        "note": _as_str(_pick(record, "note", "terms")) or None,
    }
    return CanonicalInvoice.from_payload(canonical)
