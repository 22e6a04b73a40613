"""Monetary totals of a canonical invoice, rounded half-up to cents."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal

from pydantic import BaseModel

from relay_core.models.canonical import CanonicalInvoice

_CENT = Decimal("0.01")


def round2(value: float | Decimal) -> Decimal:
    return Decimal(str(value)).quantize(_CENT, rounding=ROUND_HALF_UP)


class InvoiceTotals(BaseModel):
    net_total: Decimal
    tax_total: Decimal
    discount_total: Decimal
    tax_basis_total: Decimal
    grand_total: Decimal
    due_total: Decimal


def compute_invoice_totals(invoice: CanonicalInvoice) -> InvoiceTotals:
    """Header totals used by both the XML and the PDF rendering."""
    net = round2(sum(line.quantity * line.unit_price for line in invoice.lines))
    tax = round2(sum(line.quantity * line.unit_price * line.tax_rate for line in invoice.lines))
    discount = round2(max(0.0, invoice.discount_total))
    return InvoiceTotals(
        net_total=net,
        tax_total=tax,
        discount_total=discount,
        tax_basis_total=max(Decimal("0.00"), net - discount),
        grand_total=net + tax - discount,
        due_total=round2(invoice.total_amount),
    )
