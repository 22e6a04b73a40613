"""Factur-X artifact generation: PDF plus CII XML with their digests.

The XML is embedded in the PDF as ``factur-x.xml`` and also kept as its own
artifact; both are stored and submitted together.  ``pdf_sha256`` covers
the PDF with the attachment.
"""

from __future__ import annotations

import hashlib
import logging

from pydantic import BaseModel

from relay_core.facturx.attach import embed_facturx_xml
from relay_core.facturx.cii import build_cii_xml
from relay_core.facturx.pdf import render_invoice_pdf
from relay_core.facturx.totals import compute_invoice_totals
from relay_core.models.canonical import CanonicalInvoice

logger = logging.getLogger(__name__)


class FacturxArtifacts(BaseModel):
    pdf: bytes
    xml: bytes
    pdf_sha256: str
    xml_sha256: str


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


class FacturxGenerator:
    """Renders canonical invoices into Factur-X artifact pairs."""

    def generate(self, invoice: CanonicalInvoice) -> FacturxArtifacts:
        totals = compute_invoice_totals(invoice)
        xml = build_cii_xml(invoice)
        pdf = embed_facturx_xml(render_invoice_pdf(invoice, totals), xml)
        artifacts = FacturxArtifacts(pdf=pdf, xml=xml, pdf_sha256=sha256_hex(pdf), xml_sha256=sha256_hex(xml))
        logger.debug(
            "Rendered invoice %s: pdf=%d bytes xml=%d bytes",
            invoice.invoice_number,
            len(pdf),
            len(xml),
        )
        return artifacts
