"""XRechnung-Serialisierung (UN/CEFACT CII, EN16931).

Die XML wird aus Templates aufgebaut und ist eine reine Funktion der
Rechnung: gleiche Eingabe, gleiche Bytes. Beträge stammen aus
``compute_document_totals`` und stimmen daher mit dem PDF überein.
"""

from __future__ import annotations

import textwrap
from datetime import date
from decimal import Decimal
from html import escape
from typing import List, Optional

from ..dto import Invoice, LineItem, PartySnapshot, quantize_money

XRECHNUNG_GUIDELINE_ID = "urn:cen.eu:en16931:2017#compliant#urn:xeinkauf.de:kosit:xrechnung_3.0"
XRECHNUNG_PROFILE_ID = "urn:fdc:peppol.eu:2017:poacc:billing:01:1.0"
GENERATOR_VERSION = "xrechnung-cii-1.0.0"

TYPE_CODE_INVOICE = "380"
TYPE_CODE_CORRECTION = "384"
PAYMENT_MEANS_SEPA_TRANSFER = "58"

CII_NAMESPACES = {
    "rsm": "urn:un:unece:uncefact:data:standard:CrossIndustryInvoice:100",
    "ram": "urn:un:unece:uncefact:data:standard:ReusableAggregateBusinessInformationEntity:100",
    "udt": "urn:un:unece:uncefact:data:standard:UnqualifiedDataType:100",
    "qdt": "urn:un:unece:uncefact:data:standard:QualifiedDataType:100",
}

# UN/ECE Recommendation 20
UNIT_CODES = {
    "piece": "H87",
    "hour": "HUR",
    "day": "DAY",
    "week": "WEE",
    "month": "MON",
    "year": "ANN",
    "kg": "KGM",
    "m": "MTR",
    "km": "KMT",
    "m2": "MTK",
    "l": "LTR",
    "flat": "LS",
}
DEFAULT_UNIT_CODE = "C62"


def version() -> str:
    return GENERATOR_VERSION


def _format_amount(value: Decimal) -> str:
    return f"{quantize_money(value):.2f}"


def _format_quantity(value: Decimal) -> str:
    normalized = value.normalize()
    if normalized == normalized.to_integral_value():
        return str(normalized.quantize(Decimal(1)))
    return format(normalized, "f")


def _format_rate(rate: Decimal) -> str:
    return f"{rate:.2f}"


def _format_date(value: date) -> str:
    return value.strftime("%Y%m%d")


def _tax_category(rate: Decimal) -> str:
    return "Z" if rate == 0 else "S"


def _text(value: Optional[str]) -> str:
    return escape(value or "", quote=True)


def _render_line(index: int, item: LineItem) -> str:
    unit_code = UNIT_CODES.get(item.unit, DEFAULT_UNIT_CODE)
    return textwrap.dedent(
        f"""
        <ram:IncludedSupplyChainTradeLineItem>
          <ram:AssociatedDocumentLineDocument>
            <ram:LineID>{index}</ram:LineID>
          </ram:AssociatedDocumentLineDocument>
          <ram:SpecifiedTradeProduct>
            <ram:Name>{_text(item.description)}</ram:Name>
          </ram:SpecifiedTradeProduct>
          <ram:SpecifiedLineTradeAgreement>
            <ram:NetPriceProductTradePrice>
              <ram:ChargeAmount>{_format_amount(item.unit_price)}</ram:ChargeAmount>
            </ram:NetPriceProductTradePrice>
          </ram:SpecifiedLineTradeAgreement>
          <ram:SpecifiedLineTradeDelivery>
            <ram:BilledQuantity unitCode="{unit_code}">{_format_quantity(item.quantity)}</ram:BilledQuantity>
          </ram:SpecifiedLineTradeDelivery>
          <ram:SpecifiedLineTradeSettlement>
            <ram:ApplicableTradeTax>
              <ram:TypeCode>VAT</ram:TypeCode>
              <ram:CategoryCode>{_tax_category(item.vat_rate)}</ram:CategoryCode>
              <ram:RateApplicablePercent>{_format_rate(item.vat_rate)}</ram:RateApplicablePercent>
            </ram:ApplicableTradeTax>
            <ram:SpecifiedTradeSettlementLineMonetarySummation>
              <ram:LineTotalAmount>{_format_amount(item.total)}</ram:LineTotalAmount>
            </ram:SpecifiedTradeSettlementLineMonetarySummation>
          </ram:SpecifiedLineTradeSettlement>
        </ram:IncludedSupplyChainTradeLineItem>
        """
    ).strip()


def _render_contact(party: PartySnapshot) -> str:
    contact = party.contact
    if contact is None or not contact.has_any():
        return ""
    parts: List[str] = ["<ram:DefinedTradeContact>"]
    if contact.name:
        parts.append(f"  <ram:PersonName>{_text(contact.name)}</ram:PersonName>")
    if contact.phone:
        parts.append(
            "  <ram:TelephoneUniversalCommunication>"
            f"<ram:CompleteNumber>{_text(contact.phone)}</ram:CompleteNumber>"
            "</ram:TelephoneUniversalCommunication>"
        )
    if contact.email:
        parts.append(
            "  <ram:EmailURIUniversalCommunication>"
            f"<ram:URIID>{_text(contact.email)}</ram:URIID>"
            "</ram:EmailURIUniversalCommunication>"
        )
    parts.append("</ram:DefinedTradeContact>")
    return "\n".join(parts)


def _render_party(tag: str, party: PartySnapshot, electronic_address: Optional[str]) -> str:
    address = party.address
    fragments: List[str] = [f"<ram:{tag}>", f"  <ram:Name>{_text(party.name)}</ram:Name>"]
    contact_xml = _render_contact(party)
    if contact_xml:
        fragments.append(textwrap.indent(contact_xml, "  "))
    fragments.append(
        textwrap.indent(
            textwrap.dedent(
                f"""
                <ram:PostalTradeAddress>
                  <ram:PostcodeCode>{_text(address.postal_code)}</ram:PostcodeCode>
                  <ram:LineOne>{_text(address.street_line)}</ram:LineOne>
                  <ram:CityName>{_text(address.city)}</ram:CityName>
                  <ram:CountryID>{_text(address.country_code)}</ram:CountryID>
                </ram:PostalTradeAddress>
                """
            ).strip(),
            "  ",
        )
    )
    if electronic_address:
        fragments.append(
            "  <ram:URIUniversalCommunication>"
            f'<ram:URIID schemeID="EM">{_text(electronic_address)}</ram:URIID>'
            "</ram:URIUniversalCommunication>"
        )
    if party.vat_id:
        fragments.append(
            "  <ram:SpecifiedTaxRegistration>"
            f'<ram:ID schemeID="VA">{_text(party.vat_id)}</ram:ID>'
            "</ram:SpecifiedTaxRegistration>"
        )
    if party.tax_id:
        fragments.append(
            "  <ram:SpecifiedTaxRegistration>"
            f'<ram:ID schemeID="FC">{_text(party.tax_id)}</ram:ID>'
            "</ram:SpecifiedTaxRegistration>"
        )
    fragments.append(f"</ram:{tag}>")
    return "\n".join(fragments)


def _render_payment_means(seller: PartySnapshot) -> str:
    bank = seller.bank
    if bank is None or not bank.iban:
        return ""
    account_name = (
        f"\n    <ram:AccountName>{_text(bank.account_holder)}</ram:AccountName>"
        if bank.account_holder
        else ""
    )
    institution = (
        "\n  <ram:PayeeSpecifiedCreditorFinancialInstitution>"
        f"<ram:BICID>{_text(bank.bic)}</ram:BICID>"
        "</ram:PayeeSpecifiedCreditorFinancialInstitution>"
        if bank.bic
        else ""
    )
    return (
        "<ram:SpecifiedTradeSettlementPaymentMeans>\n"
        f"  <ram:TypeCode>{PAYMENT_MEANS_SEPA_TRANSFER}</ram:TypeCode>\n"
        "  <ram:PayeePartyCreditorFinancialAccount>\n"
        f"    <ram:IBANID>{_text(bank.iban)}</ram:IBANID>{account_name}\n"
        "  </ram:PayeePartyCreditorFinancialAccount>"
        f"{institution}\n"
        "</ram:SpecifiedTradeSettlementPaymentMeans>"
    )


def _render_tax_breakdown(invoice: Invoice) -> str:
    totals = invoice.document_totals()
    fragments = []
    for rate, basis in totals.net_by_rate.items():
        fragments.append(
            textwrap.dedent(
                f"""
                <ram:ApplicableTradeTax>
                  <ram:CalculatedAmount>{_format_amount(totals.tax_by_rate[rate])}</ram:CalculatedAmount>
                  <ram:TypeCode>VAT</ram:TypeCode>
                  <ram:BasisAmount>{_format_amount(basis)}</ram:BasisAmount>
                  <ram:CategoryCode>{_tax_category(rate)}</ram:CategoryCode>
                  <ram:RateApplicablePercent>{_format_rate(rate)}</ram:RateApplicablePercent>
                </ram:ApplicableTradeTax>
                """
            ).strip()
        )
    return "\n".join(fragments)


def _render_payment_terms(invoice: Invoice) -> str:
    if invoice.due_date is None:
        return ""
    return textwrap.dedent(
        f"""
        <ram:SpecifiedTradePaymentTerms>
          <ram:DueDateDateTime>
            <udt:DateTimeString format="102">{_format_date(invoice.due_date)}</udt:DateTimeString>
          </ram:DueDateDateTime>
        </ram:SpecifiedTradePaymentTerms>
        """
    ).strip()


def _render_referenced_invoice(number: str, issue_date: Optional[date]) -> str:
    issued = (
        "\n  <ram:FormattedIssueDateTime>"
        f'<qdt:DateTimeString format="102">{_format_date(issue_date)}</qdt:DateTimeString>'
        "</ram:FormattedIssueDateTime>"
        if issue_date
        else ""
    )
    return (
        "<ram:InvoiceReferencedDocument>\n"
        f"  <ram:IssuerAssignedID>{_text(number)}</ram:IssuerAssignedID>{issued}\n"
        "</ram:InvoiceReferencedDocument>"
    )


def _render_notes(invoice: Invoice) -> str:
    notes = [text for text in (invoice.intro_text, invoice.outro_text) if text and text.strip()]
    return "\n".join(
        f"<ram:IncludedNote><ram:Content>{_text(note.strip())}</ram:Content></ram:IncludedNote>"
        for note in notes
    )


def _indent(fragment: str, spaces: int) -> str:
    return textwrap.indent(fragment, " " * spaces) if fragment else ""


def serialize(
    invoice: Invoice,
    *,
    is_cancellation: bool = False,
    original_number: Optional[str] = None,
    original_issue_date: Optional[date] = None,
) -> bytes:
    """Erzeugt die XRechnung-CII-XML einer finalisierten Rechnung.

    Bei Stornos wird TypeCode 384 gesetzt und die Originalrechnung als
    ``InvoiceReferencedDocument`` (BT-25) referenziert. Mengen und Beträge sind
    dann negativ, passend zum PDF.
    """

    if not invoice.invoice_number:
        raise ValueError("Invoice number must be set before serializing XRechnung XML")
    if invoice.seller is None or invoice.buyer is None:
        raise ValueError("Invoice parties must be resolved before serializing XRechnung XML")
    if invoice.invoice_date is None:
        raise ValueError("Invoice date must be set before serializing XRechnung XML")
    if is_cancellation and not original_number:
        raise ValueError("Cancellation requires the original invoice number")

    totals = invoice.document_totals()
    seller, buyer = invoice.seller, invoice.buyer
    currency = _text(invoice.currency)
    type_code = TYPE_CODE_CORRECTION if is_cancellation else TYPE_CODE_INVOICE
    buyer_reference = invoice.buyer_reference or invoice.invoice_number
    seller_address = seller.email or (seller.contact.email if seller.contact else None)
    buyer_address = invoice.recipient_email or buyer.email
    delivery_date = invoice.service_date or invoice.invoice_date

    lines_xml = "\n".join(
        _render_line(index + 1, item) for index, item in enumerate(invoice.line_items)
    )
    settlement_parts = [
        f"<ram:InvoiceCurrencyCode>{currency}</ram:InvoiceCurrencyCode>",
        _render_payment_means(seller),
        _render_tax_breakdown(invoice),
        _render_payment_terms(invoice),
        textwrap.dedent(
            f"""
            <ram:SpecifiedTradeSettlementHeaderMonetarySummation>
              <ram:LineTotalAmount>{_format_amount(totals.subtotal)}</ram:LineTotalAmount>
              <ram:TaxBasisTotalAmount>{_format_amount(totals.subtotal)}</ram:TaxBasisTotalAmount>
              <ram:TaxTotalAmount currencyID="{currency}">{_format_amount(totals.vat_total)}</ram:TaxTotalAmount>
              <ram:GrandTotalAmount>{_format_amount(totals.total)}</ram:GrandTotalAmount>
              <ram:DuePayableAmount>{_format_amount(totals.total)}</ram:DuePayableAmount>
            </ram:SpecifiedTradeSettlementHeaderMonetarySummation>
            """
        ).strip(),
    ]
    if is_cancellation:
        settlement_parts.append(_render_referenced_invoice(original_number, original_issue_date))
    settlement_xml = "\n".join(part for part in settlement_parts if part)
    notes_xml = _render_notes(invoice)

    xml_content = f"""<?xml version="1.0" encoding="UTF-8"?>
<rsm:CrossIndustryInvoice xmlns:rsm="{CII_NAMESPACES['rsm']}" xmlns:ram="{CII_NAMESPACES['ram']}" xmlns:udt="{CII_NAMESPACES['udt']}" xmlns:qdt="{CII_NAMESPACES['qdt']}">
  <rsm:ExchangedDocumentContext>
    <ram:BusinessProcessSpecifiedDocumentContextParameter>
      <ram:ID>{XRECHNUNG_PROFILE_ID}</ram:ID>
    </ram:BusinessProcessSpecifiedDocumentContextParameter>
    <ram:GuidelineSpecifiedDocumentContextParameter>
      <ram:ID>{XRECHNUNG_GUIDELINE_ID}</ram:ID>
    </ram:GuidelineSpecifiedDocumentContextParameter>
  </rsm:ExchangedDocumentContext>
  <rsm:ExchangedDocument>
    <ram:ID>{_text(invoice.invoice_number)}</ram:ID>
    <ram:TypeCode>{type_code}</ram:TypeCode>
    <ram:IssueDateTime>
      <udt:DateTimeString format="102">{_format_date(invoice.invoice_date)}</udt:DateTimeString>
    </ram:IssueDateTime>
{_indent(notes_xml, 4)}
  </rsm:ExchangedDocument>
  <rsm:SupplyChainTradeTransaction>
{_indent(lines_xml, 4)}
    <ram:ApplicableHeaderTradeAgreement>
      <ram:BuyerReference>{_text(buyer_reference)}</ram:BuyerReference>
{_indent(_render_party("SellerTradeParty", seller, seller_address), 6)}
{_indent(_render_party("BuyerTradeParty", buyer, buyer_address), 6)}
    </ram:ApplicableHeaderTradeAgreement>
    <ram:ApplicableHeaderTradeDelivery>
      <ram:ActualDeliverySupplyChainEvent>
        <ram:OccurrenceDateTime>
          <udt:DateTimeString format="102">{_format_date(delivery_date)}</udt:DateTimeString>
        </ram:OccurrenceDateTime>
      </ram:ActualDeliverySupplyChainEvent>
    </ram:ApplicableHeaderTradeDelivery>
    <ram:ApplicableHeaderTradeSettlement>
{_indent(settlement_xml, 6)}
    </ram:ApplicableHeaderTradeSettlement>
  </rsm:SupplyChainTradeTransaction>
</rsm:CrossIndustryInvoice>
"""
    # Leere Zeilen fehlender optionaler Blöcke entfernen
    cleaned = "\n".join(line for line in xml_content.splitlines() if line.strip()) + "\n"
    return cleaned.encode("utf-8")
