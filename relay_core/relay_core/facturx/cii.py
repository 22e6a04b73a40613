"""UN/CEFACT Cross Industry Invoice (CII) XML for the Factur-X attachment."""

from __future__ import annotations

import xml.etree.ElementTree as ET
from decimal import Decimal

from relay_core.facturx.totals import compute_invoice_totals, round2
from relay_core.models.canonical import CanonicalInvoice, CanonicalParty

NS_RSM = "urn:un:unece:uncefact:data:standard:CrossIndustryInvoice:100"
NS_RAM = "urn:un:unece:uncefact:data:standard:ReusableAggregateBusinessInformationEntity:100"
NS_UDT = "urn:un:unece:uncefact:data:standard:UnqualifiedDataType:100"

# Commercial invoice.
INVOICE_TYPE_CODE = "380"
# Factur-X EN 16931 guideline.
GUIDELINE_ID = "urn:cen.eu:en16931:2017"

ET.register_namespace("rsm", NS_RSM)
ET.register_namespace("ram", NS_RAM)
ET.register_namespace("udt", NS_UDT)


def _rsm(tag: str) -> str:
    return f"{{{NS_RSM}}}{tag}"


def _ram(tag: str) -> str:
    return f"{{{NS_RAM}}}{tag}"


def _udt(tag: str) -> str:
    return f"{{{NS_UDT}}}{tag}"


def _sub(parent: ET.Element, tag: str, text: str | None = None, **attrib: str) -> ET.Element:
    element = ET.SubElement(parent, tag, attrib)
    if text is not None:
        element.text = text
    return element


def _amount(value: float | Decimal) -> str:
    return f"{round2(value):.2f}"


def _percent(rate: float) -> str:
    return f"{Decimal(str(rate)) * 100:.2f}"


def _date_102(parent: ET.Element, tag: str, iso_date: str) -> None:
    wrapper = _sub(parent, tag)
    _sub(wrapper, _udt("DateTimeString"), iso_date.replace("-", ""), format="102")


def _party(parent: ET.Element, tag: str, party: CanonicalParty) -> None:
    node = _sub(parent, _ram(tag))
    _sub(node, _ram("Name"), party.name)
    if party.siren:
        legal = _sub(node, _ram("SpecifiedLegalOrganization"))
        _sub(legal, _ram("ID"), party.siren, schemeID="0002")
    address = _sub(node, _ram("PostalTradeAddress"))
    if party.postal_code:
        _sub(address, _ram("PostcodeCode"), party.postal_code)
    if party.address_line:
        _sub(address, _ram("LineOne"), party.address_line)
    if party.city:
        _sub(address, _ram("CityName"), party.city)
    _sub(address, _ram("CountryID"), party.country)
    if party.email:
        uri = _sub(node, _ram("URIUniversalCommunication"))
        _sub(uri, _ram("URIID"), party.email, schemeID="EM")
    if party.vat_id:
        registration = _sub(node, _ram("SpecifiedTaxRegistration"))
        _sub(registration, _ram("ID"), party.vat_id, schemeID="VA")


def build_cii_xml(invoice: CanonicalInvoice) -> bytes:
    """Render *invoice* as UTF-8 CII XML with an XML declaration."""
    totals = compute_invoice_totals(invoice)
    root = ET.Element(_rsm("CrossIndustryInvoice"))

    context = _sub(root, _rsm("ExchangedDocumentContext"))
    guideline = _sub(context, _ram("GuidelineSpecifiedDocumentContextParameter"))
    _sub(guideline, _ram("ID"), GUIDELINE_ID)

    document = _sub(root, _rsm("ExchangedDocument"))
    _sub(document, _ram("ID"), invoice.invoice_number)
    _sub(document, _ram("TypeCode"), INVOICE_TYPE_CODE)
    _date_102(document, _ram("IssueDateTime"), invoice.issue_date.isoformat())
    if invoice.note:
        note = _sub(document, _ram("IncludedNote"))
        _sub(note, _ram("Content"), invoice.note)

    transaction = _sub(root, _rsm("SupplyChainTradeTransaction"))
    for index, line in enumerate(invoice.lines, start=1):
        item = _sub(transaction, _ram("IncludedSupplyChainTradeLineItem"))
        line_doc = _sub(item, _ram("AssociatedDocumentLineDocument"))
        _sub(line_doc, _ram("LineID"), str(index))
        product = _sub(item, _ram("SpecifiedTradeProduct"))
        _sub(product, _ram("Name"), line.description)
        agreement = _sub(item, _ram("SpecifiedLineTradeAgreement"))
        price = _sub(agreement, _ram("NetPriceProductTradePrice"))
        _sub(price, _ram("ChargeAmount"), _amount(line.unit_price))
        delivery = _sub(item, _ram("SpecifiedLineTradeDelivery"))
        _sub(delivery, _ram("BilledQuantity"), f"{line.quantity:g}", unitCode="C62")
        settlement = _sub(item, _ram("SpecifiedLineTradeSettlement"))
        tax = _sub(settlement, _ram("ApplicableTradeTax"))
        _sub(tax, _ram("TypeCode"), "VAT")
        _sub(tax, _ram("CategoryCode"), "S" if line.tax_rate > 0 else "Z")
        _sub(tax, _ram("RateApplicablePercent"), _percent(line.tax_rate))
        summation = _sub(settlement, _ram("SpecifiedTradeSettlementLineMonetarySummation"))
        _sub(summation, _ram("LineTotalAmount"), _amount(line.net_amount))

    header_agreement = _sub(transaction, _ram("ApplicableHeaderTradeAgreement"))
    _party(header_agreement, "SellerTradeParty", invoice.seller)
    _party(header_agreement, "BuyerTradeParty", invoice.buyer)

    _sub(transaction, _ram("ApplicableHeaderTradeDelivery"))

    header_settlement = _sub(transaction, _ram("ApplicableHeaderTradeSettlement"))
    _sub(header_settlement, _ram("InvoiceCurrencyCode"), invoice.currency)
    if invoice.due_date is not None:
        terms = _sub(header_settlement, _ram("SpecifiedTradePaymentTerms"))
        _date_102(terms, _ram("DueDateDateTime"), invoice.due_date.isoformat())
    summation = _sub(header_settlement, _ram("SpecifiedTradeSettlementHeaderMonetarySummation"))
    _sub(summation, _ram("LineTotalAmount"), _amount(totals.net_total))
    if totals.discount_total > 0:
        _sub(summation, _ram("AllowanceTotalAmount"), _amount(totals.discount_total))
    _sub(summation, _ram("TaxBasisTotalAmount"), _amount(totals.tax_basis_total))
    _sub(summation, _ram("TaxTotalAmount"), _amount(totals.tax_total), currencyID=invoice.currency)
    _sub(summation, _ram("GrandTotalAmount"), _amount(totals.grand_total))
    _sub(summation, _ram("DuePayableAmount"), _amount(totals.due_total))

    return ET.tostring(root, encoding="utf-8", xml_declaration=True)
