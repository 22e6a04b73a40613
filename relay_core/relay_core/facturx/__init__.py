"""Factur-X rendering: CII XML, PDF and header totals."""

from relay_core.facturx.attach import FACTURX_ATTACHMENT_NAME, embed_facturx_xml
from relay_core.facturx.cii import build_cii_xml
from relay_core.facturx.generator import FacturxArtifacts, FacturxGenerator, sha256_hex
from relay_core.facturx.totals import InvoiceTotals, compute_invoice_totals

__all__ = [
    "FACTURX_ATTACHMENT_NAME",
    "FacturxArtifacts",
    "FacturxGenerator",
    "InvoiceTotals",
    "build_cii_xml",
    "compute_invoice_totals",
    "embed_facturx_xml",
    "sha256_hex",
]
