"""Human-readable PDF of a canonical invoice, rendered with reportlab."""

from __future__ import annotations

import io
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle

from relay_core.facturx.totals import InvoiceTotals
from relay_core.models.canonical import CanonicalInvoice, CanonicalParty


def _party_block(title: str, party: CanonicalParty, style: ParagraphStyle) -> Paragraph:
    lines = [f"<b>{escape(title)}</b>", escape(party.name)]
    if party.address_line:
        lines.append(escape(party.address_line))
    locality = " ".join(part for part in (party.postal_code, party.city) if part)
    if locality:
        lines.append(escape(locality))
    lines.append(party.country)
    if party.vat_id:
        lines.append(f"VAT: {escape(party.vat_id)}")
    return Paragraph("<br/>".join(lines), style)


def render_invoice_pdf(invoice: CanonicalInvoice, totals: InvoiceTotals) -> bytes:
    """Render *invoice* to PDF bytes.

    ``invariant=1`` fixes the creation timestamp and document id, so the same
    invoice renders to the same bytes.
    """
    buf = io.BytesIO()
    doc = SimpleDocTemplate(
        buf,
        pagesize=A4,
        topMargin=18 * mm,
        bottomMargin=18 * mm,
        title=f"Invoice {invoice.invoice_number}",
        author=invoice.seller.name,
        invariant=1,
    )
    styles = getSampleStyleSheet()
    meta_style = ParagraphStyle("Meta", parent=styles["Normal"], fontSize=9, textColor=colors.grey)
    currency = invoice.currency

    elements: list = []
    elements.append(Paragraph(f"Invoice {escape(invoice.invoice_number)}", styles["Heading1"]))
    elements.append(Paragraph(f"Issue date: {invoice.issue_date.isoformat()}", meta_style))
    if invoice.due_date is not None:
        elements.append(Paragraph(f"Due date: {invoice.due_date.isoformat()}", meta_style))
    elements.append(Spacer(1, 12))

    parties = Table(
        [[_party_block("Seller", invoice.seller, styles["Normal"]), _party_block("Buyer", invoice.buyer, styles["Normal"])]],
        colWidths=[85 * mm, 85 * mm],
    )
    parties.setStyle(TableStyle([("VALIGN", (0, 0), (-1, -1), "TOP")]))
    elements.append(parties)
    elements.append(Spacer(1, 18))

    table_data: list[list[str]] = [["Description", "Qty", "Unit price", "VAT", "Net"]]
    for line in invoice.lines:
        table_data.append(
            [
                line.description,
                f"{line.quantity:g}",
                f"{line.unit_price:.2f} {currency}",
                f"{line.tax_rate * 100:.1f}%",
                f"{line.net_amount:.2f} {currency}",
            ]
        )
    table_data.append(["", "", "", "Net total:", f"{totals.net_total} {currency}"])
    table_data.append(["", "", "", "Discount:", f"{totals.discount_total} {currency}"])
    table_data.append(["", "", "", "VAT:", f"{totals.tax_total} {currency}"])
    table_data.append(["", "", "", "Amount due:", f"{totals.due_total} {currency}"])

    table = Table(table_data, colWidths=[70 * mm, 18 * mm, 30 * mm, 25 * mm, 30 * mm])
    table.setStyle(
        TableStyle(
            [
                ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#1f2a44")),
                ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("GRID", (0, 0), (-1, -5), 0.5, colors.grey),
                ("ALIGN", (1, 0), (-1, -1), "RIGHT"),
                ("FONTNAME", (3, -4), (-1, -1), "Helvetica-Bold"),
                ("LINEABOVE", (3, -1), (-1, -1), 1.5, colors.black),
            ]
        )
    )
    elements.append(table)

    if invoice.note:
        elements.append(Spacer(1, 18))
        elements.append(Paragraph(escape(invoice.note), meta_style))

    doc.build(elements)
    return buf.getvalue()
