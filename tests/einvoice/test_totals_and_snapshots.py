"""Totals, VAT grouping and value-type conversions."""

from __future__ import annotations

from decimal import Decimal

import pytest

from einvoice.dto import (
    ExternalParty,
    Invoice,
    LineItem,
    SelfParty,
    compute_document_totals,
    compute_totals,
    party_ref_from_dict,
    party_ref_to_dict,
    quantize_money,
)
from einvoice.samples import BUYER_PARTY, SELLER_PARTY, get_scenario


def _item(quantity: str, price: str, rate: str, description: str = "Pos") -> LineItem:
    return LineItem(description=description, quantity=quantity, unit_price=price, vat_rate=rate)


def test_single_rate_scenario_totals():
    items = [LineItem.from_mapping(i) for i in get_scenario("01").line_items()]

    totals = compute_document_totals(items)

    assert totals.subtotal == Decimal("200.00")
    assert totals.vat_total == Decimal("38.00")
    assert totals.total == Decimal("238.00")


def test_vat_grouping_merges_equal_rates_in_ascending_order():
    items = [_item("1", "100", "19"), _item("2", "30", "7"), _item("1", "50", "19.0")]

    totals = compute_document_totals(items)

    assert list(totals.tax_by_rate) == [Decimal("7"), Decimal("19")]
    assert totals.net_by_rate[Decimal("19")] == Decimal("150.00")
    assert totals.tax_by_rate[Decimal("19")] == Decimal("28.50")
    assert totals.tax_by_rate[Decimal("7")] == Decimal("4.20")
    assert totals.total == Decimal("242.70")


def test_exact_totals_keep_full_precision():
    totals = compute_totals([_item("3", "33.333", "19")])

    assert totals.subtotal == Decimal("99.999")
    assert quantize_money(totals.subtotal) == Decimal("100.00")


def test_document_totals_round_once_per_rate_group():
    items = [_item("1", "0.005", "19") for _ in range(3)]

    exact = compute_totals(items)
    totals = compute_document_totals(items)

    assert exact.subtotal == Decimal("0.015")
    assert totals.net_by_rate == {Decimal("19"): Decimal("0.02")}
    assert totals.subtotal == Decimal("0.02")
    assert totals.vat_total == Decimal("0.00")
    assert totals.total == Decimal("0.02")


def test_document_tax_is_computed_on_the_exact_group_net():
    items = [_item("1", "33.333", "19"), _item("2", "33.333", "19")]

    totals = compute_document_totals(items)

    assert totals.subtotal == Decimal("100.00")
    assert totals.tax_by_rate[Decimal("19")] == Decimal("19.00")


def test_negated_lines_negate_document_totals_exactly():
    items = [LineItem.from_mapping(i) for i in get_scenario("05").line_items()]

    original = compute_document_totals(items)
    storno = compute_document_totals([item.negated() for item in items])

    assert storno.subtotal == -original.subtotal
    assert storno.vat_total == -original.vat_total
    assert storno.total == -original.total
    assert storno.tax_by_rate == {rate: -tax for rate, tax in original.tax_by_rate.items()}


def test_line_item_from_mapping_rejects_garbage():
    with pytest.raises(ValueError):
        LineItem.from_mapping({"description": "x", "quantity": "zwei", "unit_price": "1"})


def test_float_input_is_converted_via_string():
    item = LineItem(description="x", quantity=0.1, unit_price=3, vat_rate=19)

    assert item.quantity == Decimal("0.1")
    assert item.total == Decimal("0.3")


def test_party_ref_round_trip_and_unknown_kind():
    assert party_ref_from_dict({"kind": "self"}) == SelfParty()
    assert party_ref_from_dict({"kind": "contact", "contact_id": "c-1"}) == ExternalParty("c-1")
    assert party_ref_to_dict(ExternalParty("c-1")) == {"kind": "contact", "contact_id": "c-1"}
    assert party_ref_from_dict(None) is None
    with pytest.raises(ValueError):
        party_ref_from_dict({"kind": "vendor"})


def test_invoice_to_dict_exposes_rounded_totals():
    invoice = Invoice(
        invoice_id="inv-1",
        tenant_id="t",
        seller=SELLER_PARTY,
        buyer=BUYER_PARTY,
        line_items=[_item("2", "100.00", "19")],
        invoice_date="2025-03-01",
    )

    data = invoice.to_dict()

    assert data["subtotal"] == "200.00"
    assert data["vat_amount"] == "38.00"
    assert data["total_amount"] == "238.00"
    assert data["invoice_date"] == "2025-03-01"
    assert data["seller"]["name"] == SELLER_PARTY.name
