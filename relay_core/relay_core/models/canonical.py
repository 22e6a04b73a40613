"""Canonical invoice: the CRM-independent document every later stage consumes.

The canonical form is validated once, in MAP_CANONICAL, and persisted as
JSON on the invoice row.  Rendering and submission read it back with
:meth:`CanonicalInvoice.from_payload`.
"""

from __future__ import annotations

from datetime import date
from typing import Any, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from relay_core.errors import CanonicalValidationError

# Maximum accepted gap between the reported total and the computed one.
TOTAL_TOLERANCE = 0.01


class CanonicalParty(BaseModel):
    """Buyer or seller with tax identifier and postal address."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1)
    country: str = Field(..., min_length=2, max_length=2, pattern=r"^[A-Z]{2}$")
    vat_id: str | None = None
    siren: str | None = None
    address_line: str | None = None
    postal_code: str | None = None
    city: str | None = None
    email: str | None = None


class CanonicalLine(BaseModel):
    """One invoice line.  ``tax_rate`` is a fraction (0.2 means 20 %)."""

    model_config = ConfigDict(frozen=True)

    description: str = Field(..., min_length=1)
    quantity: float = Field(..., gt=0)
    unit_price: float = Field(..., ge=0)
    tax_rate: float = Field(default=0.0, ge=0)

    @property
    def net_amount(self) -> float:
        return self.quantity * self.unit_price

    @property
    def extension(self) -> float:
        """Line amount including tax."""
        return self.quantity * self.unit_price * (1 + self.tax_rate)


class CanonicalInvoice(BaseModel):
    """Validated cross-border invoice.

    The ``total_amount`` must equal the sum of line extensions minus the
    discount, within :data:`TOTAL_TOLERANCE`.
    """

    model_config = ConfigDict(frozen=True)

    tenant_id: str = Field(..., min_length=1)
    invoice_number: str = Field(..., min_length=1)
    issue_date: date
    due_date: date | None = None
    currency: str = Field(..., min_length=3, max_length=3, pattern=r"^[A-Z]{3}$")
    total_amount: float = Field(..., ge=0)
    discount_total: float = Field(default=0.0, ge=0)
    buyer: CanonicalParty
    seller: CanonicalParty
    lines: list[CanonicalLine] = Field(..., min_length=1)
    note: str | None = None

    @model_validator(mode="after")
    def _check_total(self) -> Self:
        expected = computed_total(self.lines, self.discount_total)
        if abs(self.total_amount - expected) > TOTAL_TOLERANCE:
            raise ValueError(
                f"total_amount {self.total_amount:.2f} does not match line sum minus discount {expected:.2f}"
            )
        return self

    # ------------------------------------------------------------------
    # (De)serialization
    # ------------------------------------------------------------------

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> CanonicalInvoice:
        """Validate *payload*, raising :class:`CanonicalValidationError` on failure."""
        try:
            return cls.model_validate(payload)
        except ValidationError as exc:
            issues = [
                f"{'.'.join(str(p) for p in err['loc']) or 'invoice'}: {err['msg']}" for err in exc.errors()
            ]
            raise CanonicalValidationError(issues) from exc

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


def computed_total(lines: list[CanonicalLine], discount: float = 0.0) -> float:
    """Sum of ``quantity * unit_price * (1 + tax_rate)`` minus *discount*."""
    return sum(line.extension for line in lines) - discount
