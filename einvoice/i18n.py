"""Beschriftungen sowie Datums- und Betragsformate für Deutsch und Englisch."""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Dict

from .dto import DecimalLike, quantize_money

SUPPORTED_LANGUAGES = ("de", "en")

LABELS: Dict[str, Dict[str, str]] = {
    "de": {
        "invoice": "Rechnung",
        "cancellation": "Stornorechnung",
        "cancels": "Storniert Rechnung Nr. {number}",
        "invoice_number": "Rechnungsnummer",
        "invoice_date": "Rechnungsdatum",
        "service_date": "Leistungsdatum",
        "due_date": "Fällig am",
        "description": "Beschreibung",
        "quantity": "Menge",
        "unit": "Einheit",
        "price": "Preis",
        "total": "Gesamt",
        "net_amount": "Nettobetrag",
        "vat": "MwSt. {rate}%",
        "total_amount": "Gesamtbetrag",
        "bank_details": "Bankverbindung",
        "iban": "IBAN",
        "bic": "BIC",
        "bank_name": "Bank",
        "account_holder": "Kontoinhaber",
        "tax_number": "Steuernummer",
        "vat_id": "USt-IdNr.",
        "phone": "Tel.",
        "email": "E-Mail",
        "contact": "Ansprechpartner",
        "court": "Registergericht",
        "register_number": "Registernummer",
        "managing_director": "Geschäftsführung",
        "buyer_reference": "Ihre Referenz",
        "page": "Seite {page} von {pages}",
        "carried_over": "Übertrag",
    },
    "en": {
        "invoice": "Invoice",
        "cancellation": "Cancellation invoice",
        "cancels": "Cancels invoice no. {number}",
        "invoice_number": "Invoice number",
        "invoice_date": "Invoice date",
        "service_date": "Service date",
        "due_date": "Due date",
        "description": "Description",
        "quantity": "Qty",
        "unit": "Unit",
        "price": "Price",
        "total": "Total",
        "net_amount": "Net amount",
        "vat": "VAT {rate}%",
        "total_amount": "Total amount",
        "bank_details": "Bank details",
        "iban": "IBAN",
        "bic": "BIC",
        "bank_name": "Bank",
        "account_holder": "Account holder",
        "tax_number": "Tax number",
        "vat_id": "VAT ID",
        "phone": "Phone",
        "email": "Email",
        "contact": "Contact",
        "court": "Register court",
        "register_number": "Register number",
        "managing_director": "Managing director",
        "buyer_reference": "Your reference",
        "page": "Page {page} of {pages}",
        "carried_over": "Carried over",
    },
}

_UNIT_LABELS: Dict[str, Dict[str, str]] = {
    "de": {
        "piece": "Stk.",
        "hour": "Std.",
        "day": "Tag",
        "week": "Woche",
        "month": "Monat",
        "year": "Jahr",
        "kg": "kg",
        "m": "m",
        "km": "km",
        "m2": "m²",
        "l": "l",
        "flat": "pauschal",
    },
    "en": {
        "piece": "pc",
        "hour": "h",
        "day": "day",
        "week": "week",
        "month": "month",
        "year": "year",
        "kg": "kg",
        "m": "m",
        "km": "km",
        "m2": "m²",
        "l": "l",
        "flat": "flat",
    },
}

_MONTHS_EN = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


def normalize_language(language: str | None) -> str:
    return language if language in SUPPORTED_LANGUAGES else "de"


def labels(language: str | None) -> Dict[str, str]:
    return LABELS[normalize_language(language)]


def unit_label(unit: str, language: str | None) -> str:
    return _UNIT_LABELS[normalize_language(language)].get(unit, unit)


def format_rate(rate: Decimal) -> str:
    normalized = rate.normalize()
    if normalized == normalized.to_integral_value():
        return str(normalized.quantize(Decimal(1)))
    return str(normalized)


def format_date(value: date | None, language: str | None) -> str:
    if value is None:
        return ""
    if normalize_language(language) == "en":
        return f"{_MONTHS_EN[value.month - 1]} {value.day}, {value.year}"
    return f"{value.day:02d}.{value.month:02d}.{value.year}"


def _group_thousands(digits: str, separator: str) -> str:
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return separator.join(groups)


def format_money(amount: DecimalLike, language: str | None, currency: str = "EUR") -> str:
    """Formatiert Beträge kaufmännisch gerundet, z. B. ``1.234,56 €``."""

    value = quantize_money(amount)
    sign = "-" if value < 0 else ""
    integral, fraction = f"{abs(value):.2f}".split(".")
    symbol = "€" if currency == "EUR" else currency
    if normalize_language(language) == "en":
        return f"{sign}{symbol}{_group_thousands(integral, ',')}.{fraction}"
    return f"{sign}{_group_thousands(integral, '.')},{fraction} {symbol}"


def format_quantity(quantity: Decimal, language: str | None) -> str:
    normalized = quantity.normalize()
    if normalized == normalized.to_integral_value():
        text = str(normalized.quantize(Decimal(1)))
    else:
        text = f"{normalized:f}"
    if normalize_language(language) == "de":
        text = text.replace(".", ",")
    return text
