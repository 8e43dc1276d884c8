"""Party resolution into snapshots and the mandatory-field check."""

from __future__ import annotations

from dataclasses import replace

import pytest

from einvoice.compliance import ValidationIssue, format_validation_errors, validate
from einvoice.dto import (
    Address,
    DocumentClass,
    ExternalParty,
    Invoice,
    LineItem,
    PartySnapshot,
    SelfParty,
)
from einvoice.errors import NotFoundError, ValidationError
from einvoice.parties import InMemoryPartySource, PartyResolver, sequence_prefixes
from einvoice.samples import (
    BUYER_CONTACT_ID,
    BUYER_PARTY,
    ISSUER_CONTACT_ID,
    SELLER_PARTY,
    build_sample_buyer,
    build_sample_company,
    build_sample_issuer_contact,
)

TENANT = "tenant-1"


@pytest.fixture
def resolver() -> PartyResolver:
    source = InMemoryPartySource()
    source.register_company(build_sample_company(TENANT))
    source.register_contact(build_sample_buyer(TENANT))
    source.register_contact(build_sample_issuer_contact(TENANT))
    return PartyResolver(source)


def _invoice(**overrides) -> Invoice:
    values = dict(
        invoice_id="inv-1",
        tenant_id=TENANT,
        seller=SELLER_PARTY,
        buyer=BUYER_PARTY,
        line_items=[LineItem(description="Beratung", quantity="2", unit_price="100", vat_rate="19")],
        invoice_date="2025-03-01",
        due_date="2025-03-31",
    )
    values.update(overrides)
    return Invoice(**values)


def _fields(result) -> set[str]:
    return {issue.field for issue in result.errors}


def test_self_resolves_to_company_profile(resolver):
    snapshot = resolver.resolve(SelfParty(), TENANT)

    assert snapshot.name == SELLER_PARTY.name
    assert snapshot.party_id == TENANT


def test_external_resolves_to_contact_and_identity(resolver):
    ref = ExternalParty(ISSUER_CONTACT_ID)

    snapshot = resolver.resolve(ref, TENANT)
    identity = resolver.issuing_identity(ref, TENANT)

    assert snapshot.party_id == ISSUER_CONTACT_ID
    assert identity.key == f"contact:{ISSUER_CONTACT_ID}"
    assert resolver.issuing_identity(SelfParty(), TENANT).key == f"company:{TENANT}"


def test_unknown_contact_is_not_found(resolver):
    with pytest.raises(NotFoundError) as exc:
        resolver.resolve(ExternalParty("missing"), TENANT)

    assert exc.value.code == "contact_not_found"
    assert exc.value.http_status == 404


def test_number_prefix_follows_master_data(resolver):
    assert resolver.number_prefix(SelfParty(), TENANT, DocumentClass.INVOICE) == "INV"
    assert resolver.number_prefix(SelfParty(), TENANT, DocumentClass.CANCELLATION) == "ST"
    issuer = ExternalParty(ISSUER_CONTACT_ID)
    assert resolver.number_prefix(issuer, TENANT, DocumentClass.CANCELLATION) == "AS-ST"
    assert resolver.number_prefix(ExternalParty(BUYER_CONTACT_ID), TENANT, "invoice") is None
    assert resolver.number_prefix(ExternalParty("missing"), TENANT, "invoice") is None


def test_sequence_prefixes_require_an_invoice_prefix():
    buyer = build_sample_buyer(TENANT)
    contact = replace(buyer, invoice_number_prefix=" RE ")

    assert buyer.can_issue is False
    assert sequence_prefixes(buyer) == {}
    assert sequence_prefixes(contact) == {
        DocumentClass.INVOICE: "RE",
        DocumentClass.CANCELLATION: "ST",
    }


def test_payment_terms_come_from_the_company_profile():
    source = InMemoryPartySource()
    source.register_company(replace(build_sample_company(TENANT), payment_terms_days=14))
    resolver = PartyResolver(source)

    assert resolver.payment_terms_days(SelfParty(), TENANT) == 14
    assert resolver.payment_terms_days(ExternalParty(ISSUER_CONTACT_ID), TENANT) is None


def test_contacts_are_tenant_scoped(resolver):
    with pytest.raises(NotFoundError):
        resolver.resolve(ExternalParty(BUYER_CONTACT_ID), "another-tenant")


def test_complete_invoice_is_valid():
    result = validate(_invoice())

    assert result.valid
    assert result.errors == []


def test_missing_tax_id_and_vat_id_is_reported():
    seller = replace(SELLER_PARTY, tax_id=None, vat_id=None)

    result = validate(_invoice(seller=seller))

    assert not result.valid
    assert _fields(result) == {"issuer.tax"}


def test_either_tax_id_or_vat_id_is_enough():
    assert validate(_invoice(seller=replace(SELLER_PARTY, vat_id=None))).valid
    assert validate(_invoice(seller=replace(SELLER_PARTY, tax_id=None))).valid


def test_contact_person_required_for_xrechnung():
    result = validate(_invoice(seller=replace(SELLER_PARTY, contact=None)))

    assert "issuer.contact" in _fields(result)


def test_missing_numbering_prefix_is_a_validation_error():
    result = validate(_invoice(), numbering_ready=False)

    assert _fields(result) == {"issuer.numbering"}


def test_external_issuer_uses_contact_wording():
    seller = replace(SELLER_PARTY, bank=None)

    result = validate(_invoice(seller=seller, seller_ref=ExternalParty(ISSUER_CONTACT_ID)))

    assert result.errors == [ValidationIssue("issuer.bank", "IBAN des Absenders fehlt.")]


def test_customer_address_and_line_items_are_checked():
    buyer = PartySnapshot(name="", address=Address(city="Hamburg", country_code="DE"))
    items = [LineItem(description="", quantity="0", unit_price="-1", vat_rate="19")]

    result = validate(_invoice(buyer=buyer, line_items=items))

    assert {
        "customer.name",
        "customer.address.street",
        "customer.address.streetnumber",
        "customer.address.zip",
        "lineItems.0.description",
        "lineItems.0.quantity",
        "lineItems.0.unit_price",
    } <= _fields(result)


def test_warnings_do_not_block():
    result = validate(_invoice(due_date="2025-02-01"))

    assert result.valid
    assert [w.field for w in result.warnings] == ["dueDate"]


def test_raise_for_errors_groups_messages_by_section():
    seller = replace(SELLER_PARTY, tax_id=None, vat_id=None)
    result = validate(_invoice(seller=seller, line_items=[]))

    with pytest.raises(ValidationError) as exc:
        result.raise_for_errors("de")

    assert exc.value.http_status == 400
    assert exc.value.message.startswith("Absender:")
    assert "Positionen:" in exc.value.message
    assert {e["field"] for e in exc.value.to_detail()["errors"]} == {"issuer.tax", "lineItems"}


def test_single_error_message_is_not_grouped():
    issue = ValidationIssue("invoiceDate", "Bitte geben Sie ein Rechnungsdatum ein.")

    assert format_validation_errors([issue]) == issue.message
