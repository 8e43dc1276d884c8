"""Pflichtangaben-Prüfung nach §14 UStG und XRechnung (BR-DE-2).

Die Prüfung ist rein funktional: Sie liest den Entwurf samt aufgelösten
Snapshots und liefert alle Befunde auf einmal, statt beim ersten Fehler
abzubrechen.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from decimal import Decimal
from typing import Dict, List, Optional

from .dto import ExternalParty, Invoice, PartySnapshot
from .errors import ValidationError


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    field: str
    message: str


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    errors: List[ValidationIssue] = field(default_factory=list)
    warnings: List[ValidationIssue] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)

    def raise_for_errors(self, language: str = "de") -> None:
        if not self.valid:
            raise ValidationError(
                format_validation_errors(self.errors, language), issues=self.errors
            )


_ISSUER_TEXTS = {
    "company": {
        "missing": "Firmendaten konnten nicht geladen werden.",
        "name": "Firmenname fehlt. Bitte in den Einstellungen hinterlegen.",
        "street": "Straße der Firma fehlt.",
        "street_number": "Hausnummer der Firma fehlt.",
        "postal_code": "PLZ der Firma fehlt.",
        "city": "Stadt der Firma fehlt.",
        "country_code": "Land der Firma fehlt.",
        "tax": (
            "Steuernummer oder USt-IdNr. fehlt. Mindestens eine Angabe ist nach "
            "§14 UStG erforderlich."
        ),
        "bank": "IBAN fehlt. Bitte Bankdaten in den Einstellungen hinterlegen.",
        "contact": (
            "Ansprechpartner fehlt. Für XRechnung-konforme Rechnungen bitte Name, "
            "Telefon oder E-Mail in den Einstellungen hinterlegen."
        ),
        "numbering": "Rechnungsnummernkreis fehlt. Bitte Präfix in den Einstellungen hinterlegen.",
    },
    "contact": {
        "missing": "Kein Absender ausgewählt.",
        "name": "Name des Absenders fehlt.",
        "street": "Straße des Absenders fehlt.",
        "street_number": "Hausnummer des Absenders fehlt.",
        "postal_code": "PLZ des Absenders fehlt.",
        "city": "Stadt des Absenders fehlt.",
        "country_code": "Land des Absenders fehlt.",
        "tax": "Steuernummer oder USt-IdNr. des Absenders fehlt.",
        "bank": "IBAN des Absenders fehlt.",
        "contact": (
            "Ansprechpartner des Absenders fehlt. Für XRechnung-konforme Rechnungen "
            "erforderlich."
        ),
        "numbering": "Rechnungsnummer-Präfix des Absenders fehlt.",
    },
}

_CUSTOMER_TEXTS = {
    "missing": "Bitte wählen Sie einen Empfänger aus.",
    "name": "Name des Empfängers fehlt.",
    "street": "Straße des Empfängers fehlt.",
    "street_number": "Hausnummer des Empfängers fehlt.",
    "postal_code": "PLZ des Empfängers fehlt.",
    "city": "Stadt des Empfängers fehlt.",
    "country_code": "Land des Empfängers fehlt.",
}

# Feldnamen der Adresse im Fehler-Pfad
_ADDRESS_FIELDS = (
    ("street", "street"),
    ("street_number", "streetnumber"),
    ("postal_code", "zip"),
    ("city", "city"),
    ("country_code", "country"),
)


def _blank(value: Optional[str]) -> bool:
    return not (value or "").strip()


def _check_address(
    party: PartySnapshot, prefix: str, texts: Dict[str, str], errors: List[ValidationIssue]
) -> None:
    for attr, path in _ADDRESS_FIELDS:
        if _blank(getattr(party.address, attr)):
            errors.append(ValidationIssue(f"{prefix}.address.{path}", texts[attr]))


def _check_issuer(
    seller: Optional[PartySnapshot],
    variant: str,
    numbering_ready: bool,
    errors: List[ValidationIssue],
) -> None:
    texts = _ISSUER_TEXTS[variant]
    if seller is None:
        errors.append(ValidationIssue("issuer", texts["missing"]))
        return
    if _blank(seller.name):
        errors.append(ValidationIssue("issuer.name", texts["name"]))
    _check_address(seller, "issuer", texts, errors)
    if _blank(seller.tax_id) and _blank(seller.vat_id):
        errors.append(ValidationIssue("issuer.tax", texts["tax"]))
    if seller.bank is None or _blank(seller.bank.iban):
        errors.append(ValidationIssue("issuer.bank", texts["bank"]))
    if seller.contact is None or not seller.contact.has_any():
        errors.append(ValidationIssue("issuer.contact", texts["contact"]))
    if not numbering_ready:
        errors.append(ValidationIssue("issuer.numbering", texts["numbering"]))


def _check_customer(buyer: Optional[PartySnapshot], errors: List[ValidationIssue]) -> None:
    if buyer is None:
        errors.append(ValidationIssue("customer", _CUSTOMER_TEXTS["missing"]))
        return
    if _blank(buyer.name):
        errors.append(ValidationIssue("customer.name", _CUSTOMER_TEXTS["name"]))
    _check_address(buyer, "customer", _CUSTOMER_TEXTS, errors)


def _check_line_items(invoice: Invoice, errors: List[ValidationIssue]) -> None:
    if not invoice.line_items:
        errors.append(
            ValidationIssue("lineItems", "Bitte fügen Sie mindestens eine Position hinzu.")
        )
        return
    for index, item in enumerate(invoice.line_items):
        position = index + 1
        if _blank(item.description):
            errors.append(
                ValidationIssue(
                    f"lineItems.{index}.description", f"Position {position}: Beschreibung fehlt."
                )
            )
        if item.quantity <= 0:
            errors.append(
                ValidationIssue(
                    f"lineItems.{index}.quantity",
                    f"Position {position}: Menge muss größer als 0 sein.",
                )
            )
        if _blank(item.unit):
            errors.append(
                ValidationIssue(f"lineItems.{index}.unit", f"Position {position}: Einheit fehlt.")
            )
        if item.unit_price < 0:
            errors.append(
                ValidationIssue(
                    f"lineItems.{index}.unit_price", f"Position {position}: Ungültiger Preis."
                )
            )
        if item.vat_rate < 0 or item.vat_rate > Decimal("100"):
            errors.append(
                ValidationIssue(
                    f"lineItems.{index}.vat_rate",
                    f"Position {position}: MwSt.-Satz muss zwischen 0% und 100% liegen.",
                )
            )


def _collect_warnings(invoice: Invoice) -> List[ValidationIssue]:
    warnings: List[ValidationIssue] = []
    if invoice.invoice_date and invoice.due_date and invoice.due_date < invoice.invoice_date:
        warnings.append(
            ValidationIssue("dueDate", "Fälligkeitsdatum liegt vor dem Rechnungsdatum.")
        )
    buyer = invoice.buyer
    if buyer is not None and _blank(buyer.email) and _blank(invoice.recipient_email):
        warnings.append(
            ValidationIssue("customer.email", "Empfänger hat keine E-Mail-Adresse.")
        )
    zero_rated = [
        index for index, item in enumerate(invoice.line_items) if item.vat_rate == 0
    ]
    if zero_rated and (buyer is None or _blank(buyer.vat_id)):
        for index in zero_rated:
            warnings.append(
                ValidationIssue(
                    f"lineItems.{index}.vat_rate",
                    f"Position {index + 1}: 0% MwSt. ohne USt-IdNr. des Empfängers.",
                )
            )
    seen: Dict[str, int] = {}
    for index, item in enumerate(invoice.line_items):
        key = item.description.strip().lower()
        if not key:
            continue
        if key in seen:
            warnings.append(
                ValidationIssue(
                    f"lineItems.{index}.description",
                    f"Position {index + 1}: Beschreibung wiederholt Position {seen[key] + 1}.",
                )
            )
        else:
            seen[key] = index
    return warnings


def validate(invoice: Invoice, *, numbering_ready: bool = True) -> ValidationResult:
    """Prüft einen Entwurf samt Snapshots auf alle Pflichtangaben."""

    errors: List[ValidationIssue] = []
    variant = "contact" if isinstance(invoice.seller_ref, ExternalParty) else "company"
    _check_issuer(invoice.seller, variant, numbering_ready, errors)
    _check_customer(invoice.buyer, errors)
    _check_line_items(invoice, errors)
    if invoice.invoice_date is None:
        errors.append(ValidationIssue("invoiceDate", "Bitte geben Sie ein Rechnungsdatum ein."))

    return ValidationResult(valid=not errors, errors=errors, warnings=_collect_warnings(invoice))


_SECTION_LABELS = {
    "de": {"issuer": "Absender", "customer": "Empfänger", "lineItems": "Positionen"},
    "en": {"issuer": "Issuer", "customer": "Recipient", "lineItems": "Line items"},
}


def format_validation_errors(errors: List[ValidationIssue], language: str = "de") -> str:
    """Gruppiert Fehler nach Absender, Empfänger, Positionen und Sonstigem."""

    if not errors:
        return ""
    if len(errors) == 1:
        return errors[0].message

    labels = _SECTION_LABELS.get(language, _SECTION_LABELS["de"])
    sections: List[str] = []
    for group in ("issuer", "customer", "lineItems"):
        messages = [e.message for e in errors if e.field.startswith(group)]
        if messages:
            sections.append(f"{labels[group]}: {' '.join(messages)}")
    other = [
        e.message
        for e in errors
        if not e.field.startswith(("issuer", "customer", "lineItems"))
    ]
    if other:
        sections.append(" ".join(other))
    return "\n\n".join(sections)
