"""Stammdaten und Auflösung von Partei-Referenzen zu Snapshots."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Dict, Optional, Protocol, Tuple, Union

from .dto import DocumentClass, ExternalParty, PartyRef, PartySnapshot, SelfParty
from .errors import NotFoundError
from .numbering import IssuingIdentity

DEFAULT_CANCELLATION_PREFIX = "ST"


@dataclass(frozen=True, slots=True)
class CompanyProfile:
    tenant_id: str
    party: PartySnapshot
    invoice_number_prefix: str = "INV"
    cancellation_number_prefix: str = DEFAULT_CANCELLATION_PREFIX
    logo_url: Optional[str] = None
    payment_terms_days: int = 30

    @property
    def can_issue(self) -> bool:
        return bool(self.invoice_number_prefix)


@dataclass(frozen=True, slots=True)
class ContactRecord:
    contact_id: str
    tenant_id: str
    party: PartySnapshot
    invoice_number_prefix: Optional[str] = None
    cancellation_number_prefix: Optional[str] = None

    @property
    def can_issue(self) -> bool:
        return bool(self.invoice_number_prefix)


def sequence_prefixes(record: Union[CompanyProfile, ContactRecord]) -> Dict[DocumentClass, str]:
    """Präfixe der Nummernkreise eines Stammdatensatzes.

    Ohne Rechnungspräfix ist der Datensatz kein Aussteller und hat keine
    Nummernkreise; das Storno-Präfix fällt sonst auf ``ST`` zurück.
    """

    if not record.can_issue:
        return {}
    return {
        DocumentClass.INVOICE: record.invoice_number_prefix.strip(),
        DocumentClass.CANCELLATION: (
            record.cancellation_number_prefix or DEFAULT_CANCELLATION_PREFIX
        ).strip(),
    }


class PartySource(Protocol):
    def get_company(self, tenant_id: str) -> Optional[CompanyProfile]: ...

    def get_contact(self, tenant_id: str, contact_id: str) -> Optional[ContactRecord]: ...


class InMemoryPartySource:
    """Einfacher Provider für Tests und lokale Läufe."""

    def __init__(self) -> None:
        self._companies: Dict[str, CompanyProfile] = {}
        self._contacts: Dict[Tuple[str, str], ContactRecord] = {}

    def register_company(self, profile: CompanyProfile) -> None:
        self._companies[profile.tenant_id] = profile

    def register_contact(self, record: ContactRecord) -> None:
        self._contacts[(record.tenant_id, record.contact_id)] = record

    def get_company(self, tenant_id: str) -> Optional[CompanyProfile]:
        return self._companies.get(tenant_id)

    def get_contact(self, tenant_id: str, contact_id: str) -> Optional[ContactRecord]:
        return self._contacts.get((tenant_id, contact_id))


class PartyResolver:
    """Löst ``SelfParty``/``ExternalParty`` in eingefrorene Snapshots auf.

    Der Resolver liest ausschließlich; Stammdaten werden nie verändert.
    """

    def __init__(self, source: PartySource) -> None:
        self._source = source

    def company(self, tenant_id: str) -> CompanyProfile:
        profile = self._source.get_company(tenant_id)
        if profile is None:
            raise NotFoundError(
                f"Company profile for tenant '{tenant_id}' not found", code="company_not_found"
            )
        return profile

    def contact(self, tenant_id: str, contact_id: str) -> ContactRecord:
        record = self._source.get_contact(tenant_id, contact_id)
        if record is None:
            raise NotFoundError(f"Contact '{contact_id}' not found", code="contact_not_found")
        return record

    def resolve(self, ref: PartyRef, tenant_id: str) -> PartySnapshot:
        if isinstance(ref, SelfParty):
            return replace(self.company(tenant_id).party, party_id=tenant_id)
        if isinstance(ref, ExternalParty):
            record = self.contact(tenant_id, ref.contact_id)
            return replace(record.party, party_id=record.contact_id)
        raise TypeError(f"Unsupported party reference: {ref!r}")

    def issuing_identity(self, ref: PartyRef, tenant_id: str) -> IssuingIdentity:
        if isinstance(ref, ExternalParty):
            return IssuingIdentity.contact(ref.contact_id)
        return IssuingIdentity.company(tenant_id)

    def number_prefix(
        self, ref: PartyRef, tenant_id: str, document_class: DocumentClass
    ) -> Optional[str]:
        """Aktuell konfiguriertes Präfix; ``None`` ohne Stammdatensatz oder Präfix."""
        if isinstance(ref, ExternalParty):
            record = self._source.get_contact(tenant_id, ref.contact_id)
        else:
            record = self._source.get_company(tenant_id)
        if record is None:
            return None
        return sequence_prefixes(record).get(DocumentClass(document_class))

    def payment_terms_days(self, ref: PartyRef, tenant_id: str) -> Optional[int]:
        if isinstance(ref, SelfParty):
            profile = self._source.get_company(tenant_id)
            return profile.payment_terms_days if profile else None
        return None

    def logo_url(self, ref: PartyRef, tenant_id: str) -> Optional[str]:
        if isinstance(ref, SelfParty):
            profile = self._source.get_company(tenant_id)
            return profile.logo_url if profile else None
        return None
