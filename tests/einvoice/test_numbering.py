"""Gapless sequence allocation per issuing identity and document class."""

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor

import pytest

from backend.core.observability.metrics import get_metrics
from einvoice.dto import DocumentClass
from einvoice.errors import NumberingError
from einvoice.numbering import IssuingIdentity, format_number

COMPANY = IssuingIdentity.company("tenant-a")
OTHER_COMPANY = IssuingIdentity.company("tenant-b")


@pytest.fixture
def provisioned(allocator):
    allocator.provision(COMPANY, DocumentClass.INVOICE, "INV", tenant_id="tenant-a")
    allocator.provision(COMPANY, DocumentClass.CANCELLATION, "ST", tenant_id="tenant-a")
    allocator.provision(OTHER_COMPANY, DocumentClass.INVOICE, "INV", tenant_id="tenant-b")
    return allocator


def test_format_number_pads_to_four_digits():
    assert format_number("INV", 1) == "INV-0001"
    assert format_number("ST", 12345) == "ST-12345"


def test_identity_requires_reference():
    with pytest.raises(ValueError):
        IssuingIdentity.contact("")


def test_first_allocation_starts_at_one(provisioned):
    allocated = provisioned.allocate(COMPANY, DocumentClass.INVOICE)

    assert allocated.counter == 1
    assert allocated.number == "INV-0001"


def test_provision_keeps_counter_and_takes_new_prefix(provisioned):
    provisioned.allocate(COMPANY, DocumentClass.INVOICE)

    created = provisioned.provision(COMPANY, DocumentClass.INVOICE, "RE", tenant_id="tenant-a")

    assert created is False
    assert provisioned.current(COMPANY, DocumentClass.INVOICE) == 1
    assert provisioned.allocate(COMPANY, DocumentClass.INVOICE).number == "RE-0002"


def test_allocate_with_prefix_stores_it_for_later_allocations(provisioned):
    assert provisioned.allocate(COMPANY, DocumentClass.INVOICE, prefix="RE").number == "RE-0001"

    assert provisioned.allocate(COMPANY, DocumentClass.INVOICE).number == "RE-0002"


def test_provision_requires_a_prefix(allocator):
    with pytest.raises(ValueError):
        allocator.provision(COMPANY, DocumentClass.INVOICE, "  ", tenant_id="tenant-a")


def test_invoice_and_cancellation_sequences_are_independent(provisioned):
    provisioned.allocate(COMPANY, DocumentClass.INVOICE)
    provisioned.allocate(COMPANY, DocumentClass.INVOICE)

    storno = provisioned.allocate(COMPANY, DocumentClass.CANCELLATION)

    assert storno.number == "ST-0001"


def test_identities_do_not_share_counters(provisioned):
    a = [provisioned.allocate(COMPANY, DocumentClass.INVOICE).number for _ in range(3)]
    b = provisioned.allocate(OTHER_COMPANY, DocumentClass.INVOICE).number

    assert a == ["INV-0001", "INV-0002", "INV-0003"]
    assert b == "INV-0001"


def test_concurrent_allocations_are_unique_and_gapless(provisioned):
    with ThreadPoolExecutor(max_workers=8) as pool:
        futures = [
            pool.submit(provisioned.allocate, COMPANY, DocumentClass.INVOICE) for _ in range(40)
        ]
        numbers = [f.result().counter for f in futures]

    assert sorted(numbers) == list(range(1, 41))
    assert provisioned.current(COMPANY, DocumentClass.INVOICE) == 40


def test_release_of_latest_number_closes_the_gap(provisioned):
    allocated = provisioned.allocate(COMPANY, DocumentClass.INVOICE)

    assert provisioned.release(allocated) is True
    assert provisioned.allocate(COMPANY, DocumentClass.INVOICE).number == "INV-0001"


def test_release_after_newer_allocation_leaves_a_logged_gap(provisioned):
    first = provisioned.allocate(COMPANY, DocumentClass.INVOICE)
    provisioned.allocate(COMPANY, DocumentClass.INVOICE)

    assert provisioned.release(first) is False
    assert provisioned.current(COMPANY, DocumentClass.INVOICE) == 2
    assert get_metrics()["numbering_gaps_total"]["count"] == 1


def test_unprovisioned_identity_raises(allocator):
    with pytest.raises(NumberingError) as exc:
        allocator.allocate(IssuingIdentity.contact("nobody"), DocumentClass.INVOICE)

    assert exc.value.code == "numbering_not_provisioned"
    assert allocator.is_provisioned(IssuingIdentity.contact("nobody"), DocumentClass.INVOICE) is False
