"""Deterministische Beispieldaten für Tests und CLI."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

from .dto import Address, BankDetails, ContactPerson, PartySnapshot
from .parties import CompanyProfile, ContactRecord


@dataclass(frozen=True)
class SampleScenario:
    code: str
    description: str
    line_specs: tuple[tuple[str, str, str, str], ...]

    def line_items(self) -> List[Dict[str, Any]]:
        return [
            {"description": d, "quantity": q, "unit_price": p, "vat_rate": r, "unit": "piece"}
            for d, q, p, r in self.line_specs
        ]


SELLER_PARTY = PartySnapshot(
    name="Muster Software GmbH",
    address=Address(
        street="Musterstraße",
        street_number="1",
        postal_code="10115",
        city="Berlin",
        country_code="DE",
    ),
    email="rechnung@muster-software.example",
    vat_id="DE123456789",
    tax_id="30/123/45678",
    bank=BankDetails(
        iban="DE02120300000000202051",
        bic="BYLADEM1001",
        bank_name="Deutsche Kreditbank Berlin",
        account_holder="Muster Software GmbH",
    ),
    contact=ContactPerson(name="Erika Mustermann", phone="+49 30 1234567"),
    court="Amtsgericht Berlin-Charlottenburg",
    register_number="HRB 123456",
    managing_director="Max Mustermann",
)

BUYER_PARTY = PartySnapshot(
    name="Kunde AG",
    address=Address(
        street="Kundenweg",
        street_number="5",
        postal_code="20095",
        city="Hamburg",
        country_code="DE",
    ),
    email="einkauf@kunde.example",
    vat_id="DE987654321",
)

ISSUER_CONTACT_PARTY = PartySnapshot(
    name="Freie Beraterin Anna Schmidt",
    address=Address(
        street="Beraterplatz",
        street_number="7",
        postal_code="80331",
        city="München",
        country_code="DE",
    ),
    email="anna@schmidt-beratung.example",
    tax_id="143/456/78901",
    bank=BankDetails(iban="DE89370400440532013000", bic="COBADEFFXXX"),
    contact=ContactPerson(name="Anna Schmidt", email="anna@schmidt-beratung.example"),
)

BUYER_CONTACT_ID = "contact-buyer-1"
ISSUER_CONTACT_ID = "contact-issuer-1"

SCENARIOS: List[SampleScenario] = [
    SampleScenario("01", "single_19", (("Beratung", "2", "100.00", "19"),)),
    SampleScenario(
        "02",
        "mixed_7_19",
        (
            ("Beratung", "1", "100.00", "19"),
            ("Fachbuch", "2", "30.00", "7"),
            ("Schulung", "1", "50.00", "19"),
        ),
    ),
    SampleScenario("03", "zero_rate", (("Export", "5", "10.00", "0"),)),
    SampleScenario(
        "04",
        "fractional_quantities",
        (
            ("Halbtag Beratung", "0.5", "199.99", "19"),
            ("Workshop", "1.25", "80.40", "7"),
        ),
    ),
    SampleScenario(
        "05",
        "rounding_edge",
        (
            ("Position A", "3", "33.333", "19"),
            ("Position B", "4", "14.375", "7"),
        ),
    ),
]


def iter_sample_scenarios() -> Iterable[SampleScenario]:
    return list(SCENARIOS)


def get_scenario(code: str) -> SampleScenario:
    for scenario in SCENARIOS:
        if scenario.code == code or scenario.description == code:
            return scenario
    raise KeyError(code)


def build_sample_company(
    tenant_id: str,
    *,
    invoice_prefix: str = "INV",
    cancellation_prefix: str = "ST",
    party: Optional[PartySnapshot] = None,
) -> CompanyProfile:
    return CompanyProfile(
        tenant_id=tenant_id,
        party=party or SELLER_PARTY,
        invoice_number_prefix=invoice_prefix,
        cancellation_number_prefix=cancellation_prefix,
    )


def build_sample_buyer(tenant_id: str, contact_id: str = BUYER_CONTACT_ID) -> ContactRecord:
    return ContactRecord(contact_id=contact_id, tenant_id=tenant_id, party=BUYER_PARTY)


def build_sample_issuer_contact(
    tenant_id: str, contact_id: str = ISSUER_CONTACT_ID
) -> ContactRecord:
    return ContactRecord(
        contact_id=contact_id,
        tenant_id=tenant_id,
        party=ISSUER_CONTACT_PARTY,
        invoice_number_prefix="AS",
        cancellation_number_prefix="AS-ST",
    )


def build_draft_payload(
    scenario: SampleScenario,
    *,
    buyer_contact_id: str = BUYER_CONTACT_ID,
    seller: Optional[Dict[str, str]] = None,
    **overrides: Any,
) -> Dict[str, Any]:
    payload: Dict[str, Any] = {
        "seller": seller or {"kind": "self"},
        "buyer": {"kind": "contact", "contact_id": buyer_contact_id},
        "line_items": scenario.line_items(),
        "intro_text": "Vielen Dank für Ihren Auftrag.",
        "outro_text": "Zahlbar ohne Abzug.",
    }
    payload.update(overrides)
    return payload
