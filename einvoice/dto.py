"""Datentransferobjekte für Rechnungen, Parteien-Snapshots und Positionen.

Beträge werden intern exakt als ``Decimal`` geführt. Gerundet wird erst bei
Anzeige und Serialisierung (``quantize_money``, ``ROUND_HALF_UP``), damit
Storno-Belege die Originalbeträge exakt negieren.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from enum import Enum
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union


DecimalLike = Decimal | str | int | float

ZERO = Decimal("0")


def _to_decimal(value: DecimalLike) -> Decimal:
    """Konvertiere Eingaben deterministisch in ``Decimal``.

    Floats werden zunächst in Strings umgewandelt, um binäre Rundungsfehler zu
    vermeiden.
    """

    if isinstance(value, bool):
        raise TypeError("Boolean is not a valid decimal input")
    if isinstance(value, Decimal):
        return value
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    if isinstance(value, str):
        try:
            return Decimal(value.strip())
        except InvalidOperation as exc:
            raise ValueError(f"Invalid decimal value: {value!r}") from exc
    raise TypeError(f"Unsupported decimal input: {type(value)!r}")


def quantize_money(amount: DecimalLike) -> Decimal:
    """Rundet Beträge auf zwei Nachkommastellen (ROUND_HALF_UP)."""

    return _to_decimal(amount).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _parse_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


class InvoiceStatus(str, Enum):
    DRAFT = "draft"
    CREATED = "created"
    SENT = "sent"
    REMINDED = "reminded"
    PAID = "paid"
    CANCELLED = "cancelled"


# Status, die per expliziter Statusänderung gesetzt werden dürfen.
DELIVERY_STATUSES = frozenset(
    {InvoiceStatus.CREATED, InvoiceStatus.SENT, InvoiceStatus.REMINDED, InvoiceStatus.PAID}
)


class DocumentClass(str, Enum):
    INVOICE = "invoice"
    CANCELLATION = "cancellation"


@dataclass(frozen=True, slots=True)
class Address:
    street: str = ""
    street_number: str = ""
    postal_code: str = ""
    city: str = ""
    country_code: str = ""

    @property
    def street_line(self) -> str:
        return f"{self.street} {self.street_number}".strip()

    @property
    def city_line(self) -> str:
        return f"{self.postal_code} {self.city}".strip()

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> "Address":
        if data is None:
            return cls()
        if not isinstance(data, Mapping):
            raise ValueError("address must be a mapping")
        return cls(
            street=_clean(data.get("street")) or "",
            street_number=_clean(data.get("street_number", data.get("streetnumber"))) or "",
            postal_code=_clean(data.get("postal_code", data.get("zip"))) or "",
            city=_clean(data.get("city")) or "",
            country_code=(_clean(data.get("country_code", data.get("country"))) or "").upper(),
        )

    def to_dict(self) -> Dict[str, str]:
        return {
            "street": self.street,
            "street_number": self.street_number,
            "postal_code": self.postal_code,
            "city": self.city,
            "country_code": self.country_code,
        }


@dataclass(frozen=True, slots=True)
class BankDetails:
    iban: str = ""
    bic: Optional[str] = None
    bank_name: Optional[str] = None
    account_holder: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> Optional["BankDetails"]:
        if not data:
            return None
        iban = (_clean(data.get("iban")) or "").replace(" ", "").upper()
        return cls(
            iban=iban,
            bic=_clean(data.get("bic")),
            bank_name=_clean(data.get("bank_name")),
            account_holder=_clean(data.get("account_holder")),
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "iban": self.iban,
            "bic": self.bic,
            "bank_name": self.bank_name,
            "account_holder": self.account_holder,
        }


@dataclass(frozen=True, slots=True)
class ContactPerson:
    name: Optional[str] = None
    phone: Optional[str] = None
    email: Optional[str] = None

    def has_any(self) -> bool:
        return bool(self.name or self.phone or self.email)

    @classmethod
    def from_mapping(cls, data: Optional[Mapping[str, Any]]) -> Optional["ContactPerson"]:
        if not data:
            return None
        return cls(
            name=_clean(data.get("name")),
            phone=_clean(data.get("phone")),
            email=_clean(data.get("email")),
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {"name": self.name, "phone": self.phone, "email": self.email}


@dataclass(frozen=True, slots=True)
class PartySnapshot:
    """Eingefrorene Kopie der Rechnungsdaten einer Partei.

    Der Snapshot wird beim Finalisieren in die Rechnung übernommen und danach
    nie wieder aus den Stammdaten aktualisiert.
    """

    name: str
    address: Address = field(default_factory=Address)
    email: Optional[str] = None
    vat_id: Optional[str] = None
    tax_id: Optional[str] = None
    bank: Optional[BankDetails] = None
    contact: Optional[ContactPerson] = None
    court: Optional[str] = None
    register_number: Optional[str] = None
    managing_director: Optional[str] = None
    party_id: Optional[str] = None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "PartySnapshot":
        if not isinstance(data, Mapping):
            raise ValueError("party snapshot must be a mapping")
        return cls(
            name=_clean(data.get("name")) or "",
            address=Address.from_mapping(data.get("address")),
            email=_clean(data.get("email")),
            vat_id=_clean(data.get("vat_id")),
            tax_id=_clean(data.get("tax_id")),
            bank=BankDetails.from_mapping(data.get("bank", data.get("bank_details"))),
            contact=ContactPerson.from_mapping(data.get("contact")),
            court=_clean(data.get("court")),
            register_number=_clean(data.get("register_number")),
            managing_director=_clean(data.get("managing_director")),
            party_id=_clean(data.get("party_id", data.get("id"))),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "party_id": self.party_id,
            "name": self.name,
            "address": self.address.to_dict(),
            "email": self.email,
            "vat_id": self.vat_id,
            "tax_id": self.tax_id,
            "bank": self.bank.to_dict() if self.bank else None,
            "contact": self.contact.to_dict() if self.contact else None,
            "court": self.court,
            "register_number": self.register_number,
            "managing_director": self.managing_director,
        }


@dataclass(frozen=True, slots=True)
class SelfParty:
    """Die eigene Firma des Tenants."""

    kind: str = field(default="self", init=False)


@dataclass(frozen=True, slots=True)
class ExternalParty:
    """Ein externer Kontakt (Kunde oder abweichender Absender)."""

    contact_id: str
    kind: str = field(default="contact", init=False)


PartyRef = Union[SelfParty, ExternalParty]


def party_ref_from_dict(data: Optional[Mapping[str, Any]]) -> Optional[PartyRef]:
    if not data:
        return None
    kind = data.get("kind")
    if kind == "self":
        return SelfParty()
    if kind == "contact" and data.get("contact_id"):
        return ExternalParty(contact_id=str(data["contact_id"]))
    raise ValueError(f"Unsupported party reference: {dict(data)!r}")


def party_ref_to_dict(ref: Optional[PartyRef]) -> Optional[Dict[str, str]]:
    if ref is None:
        return None
    if isinstance(ref, ExternalParty):
        return {"kind": "contact", "contact_id": ref.contact_id}
    return {"kind": "self"}


@dataclass(frozen=True, slots=True)
class LineItem:
    description: str
    quantity: Decimal
    unit_price: Decimal
    vat_rate: Decimal
    unit: str = "piece"
    item_id: Optional[str] = None
    product_id: Optional[str] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "quantity", _to_decimal(self.quantity))
        object.__setattr__(self, "unit_price", _to_decimal(self.unit_price))
        object.__setattr__(self, "vat_rate", _to_decimal(self.vat_rate))

    @property
    def total(self) -> Decimal:
        return self.quantity * self.unit_price

    @property
    def vat_amount(self) -> Decimal:
        return self.total * self.vat_rate / Decimal("100")

    def negated(self) -> "LineItem":
        """Storno-Position: Menge negiert, Einzelpreis unverändert."""

        return replace(self, quantity=-self.quantity)

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "LineItem":
        if not isinstance(data, Mapping):
            raise ValueError("line item must be a mapping")
        quantity = data.get("quantity")
        unit_price = data.get("unit_price")
        vat_rate = data.get("vat_rate")
        return cls(
            description=str(data.get("description") or ""),
            quantity=_to_decimal(quantity if quantity is not None else 1),
            unit_price=_to_decimal(unit_price if unit_price is not None else 0),
            vat_rate=_to_decimal(vat_rate if vat_rate is not None else 19),
            unit=str(data.get("unit") if data.get("unit") is not None else "piece"),
            item_id=_clean(data.get("item_id", data.get("id"))),
            product_id=_clean(data.get("product_id")),
        )

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {
            "item_id": self.item_id,
            "product_id": self.product_id,
            "description": self.description,
            "quantity": str(self.quantity),
            "unit": self.unit,
            "unit_price": str(self.unit_price),
            "vat_rate": str(self.vat_rate),
            "total": str(self.total),
            "vat_amount": str(self.vat_amount),
        }


@dataclass(frozen=True, slots=True)
class Totals:
    net_by_rate: Dict[Decimal, Decimal]
    tax_by_rate: Dict[Decimal, Decimal]
    subtotal: Decimal
    vat_total: Decimal
    total: Decimal


def _rate_key(rate: Decimal) -> Decimal:
    # 19, 19.0 und 19.00 landen in derselben Gruppe
    normalized = rate.normalize()
    if normalized.as_tuple().exponent > 0:
        return normalized.quantize(Decimal(1))
    return normalized


def compute_totals(line_items: Iterable[LineItem]) -> Totals:
    """Summiert Netto und Umsatzsteuer je Steuersatz, aufsteigend sortiert."""

    net_by_rate: Dict[Decimal, Decimal] = {}
    tax_by_rate: Dict[Decimal, Decimal] = {}
    for item in line_items:
        rate = _rate_key(item.vat_rate)
        net_by_rate[rate] = net_by_rate.get(rate, ZERO) + item.total
        tax_by_rate[rate] = tax_by_rate.get(rate, ZERO) + item.vat_amount

    subtotal = sum(net_by_rate.values(), ZERO)
    vat_total = sum(tax_by_rate.values(), ZERO)
    return Totals(
        net_by_rate=dict(sorted(net_by_rate.items(), key=lambda kv: kv[0])),
        tax_by_rate=dict(sorted(tax_by_rate.items(), key=lambda kv: kv[0])),
        subtotal=subtotal,
        vat_total=vat_total,
        total=subtotal + vat_total,
    )


def compute_document_totals(line_items: Iterable[LineItem]) -> Totals:
    """Anzeigebeträge für PDF und XML.

    Je Steuersatz wird die exakte Nettosumme einmal gerundet, die Steuer auf
    die exakte Summe berechnet und ebenfalls einmal gerundet. Zwischenwerte
    bleiben ungerundet. ROUND_HALF_UP rundet symmetrisch zur Null, daher
    ergibt ein Storno exakt die negierten Werte.
    """

    exact = compute_totals(line_items)
    net_by_rate = {rate: quantize_money(net) for rate, net in exact.net_by_rate.items()}
    tax_by_rate = {
        rate: quantize_money(net * rate / Decimal("100"))
        for rate, net in exact.net_by_rate.items()
    }
    subtotal = sum(net_by_rate.values(), Decimal("0.00"))
    vat_total = sum(tax_by_rate.values(), Decimal("0.00"))
    return Totals(
        net_by_rate=net_by_rate,
        tax_by_rate=tax_by_rate,
        subtotal=subtotal,
        vat_total=vat_total,
        total=subtotal + vat_total,
    )


@dataclass(slots=True)
class Invoice:
    invoice_id: str
    tenant_id: str
    status: InvoiceStatus = InvoiceStatus.DRAFT
    document_class: DocumentClass = DocumentClass.INVOICE
    seller_ref: PartyRef = field(default_factory=SelfParty)
    buyer_ref: Optional[PartyRef] = None
    seller: Optional[PartySnapshot] = None
    buyer: Optional[PartySnapshot] = None
    line_items: Tuple[LineItem, ...] = ()
    invoice_date: Optional[date] = None
    due_date: Optional[date] = None
    service_date: Optional[date] = None
    invoice_number: Optional[str] = None
    language: str = "de"
    currency: str = "EUR"
    intro_text: Optional[str] = None
    outro_text: Optional[str] = None
    buyer_reference: Optional[str] = None
    recipient_email: Optional[str] = None
    cancelled_invoice_id: Optional[str] = None
    pdf_url: Optional[str] = None
    xml_url: Optional[str] = None
    finalized_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def __post_init__(self) -> None:
        self.line_items = tuple(self.line_items)
        self.status = InvoiceStatus(self.status)
        self.document_class = DocumentClass(self.document_class)
        self.invoice_date = _parse_date(self.invoice_date)
        self.due_date = _parse_date(self.due_date)
        self.service_date = _parse_date(self.service_date)

    @property
    def is_draft(self) -> bool:
        return self.status is InvoiceStatus.DRAFT

    @property
    def is_cancellation(self) -> bool:
        return self.document_class is DocumentClass.CANCELLATION

    def document_totals(self) -> Totals:
        return compute_document_totals(self.line_items)

    def is_overdue(self, today: date) -> bool:
        if self.due_date is None:
            return False
        if self.status in (InvoiceStatus.PAID, InvoiceStatus.CANCELLED, InvoiceStatus.DRAFT):
            return False
        return self.due_date < today

    def to_dict(self) -> Dict[str, Any]:
        totals = self.document_totals()
        return {
            "id": self.invoice_id,
            "tenant_id": self.tenant_id,
            "status": self.status.value,
            "document_class": self.document_class.value,
            "invoice_number": self.invoice_number,
            "invoice_date": self.invoice_date.isoformat() if self.invoice_date else None,
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "service_date": self.service_date.isoformat() if self.service_date else None,
            "seller_ref": party_ref_to_dict(self.seller_ref),
            "buyer_ref": party_ref_to_dict(self.buyer_ref),
            "seller": self.seller.to_dict() if self.seller else None,
            "buyer": self.buyer.to_dict() if self.buyer else None,
            "line_items": [item.to_dict() for item in self.line_items],
            "subtotal": str(quantize_money(totals.subtotal)),
            "vat_amount": str(quantize_money(totals.vat_total)),
            "total_amount": str(quantize_money(totals.total)),
            "language": self.language,
            "currency": self.currency,
            "intro_text": self.intro_text,
            "outro_text": self.outro_text,
            "buyer_reference": self.buyer_reference,
            "recipient_email": self.recipient_email,
            "cancelled_invoice_id": self.cancelled_invoice_id,
            "pdf_url": self.pdf_url,
            "xml_url": self.xml_url,
            "finalized_at": self.finalized_at.isoformat() if self.finalized_at else None,
        }


def line_items_from_payload(items: Optional[Iterable[Mapping[str, Any]]]) -> List[LineItem]:
    return [LineItem.from_mapping(item) for item in (items or [])]
