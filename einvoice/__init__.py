"""EN16931-Rechnungen: Finalisierung, Nummernkreise, PDF/XRechnung und Storno."""

from .archive import verify_package, write_package
from .cancellation import build_cancellation, check_cancellable
from .compliance import ValidationIssue, ValidationResult, format_validation_errors, validate
from .dto import (
    Address,
    BankDetails,
    ContactPerson,
    DocumentClass,
    ExternalParty,
    Invoice,
    InvoiceStatus,
    LineItem,
    PartySnapshot,
    SelfParty,
    Totals,
    compute_document_totals,
    compute_totals,
)
from .errors import (
    DocumentGenerationError,
    InvoicingError,
    NotFoundError,
    NumberingError,
    PersistenceError,
    StateConflictError,
    StorageError,
    ValidationError,
)
from .facturx import embed, extract_xml
from .finalization import (
    CancellationResult,
    FinalizationConfig,
    FinalizationResult,
    InvoiceFinalizer,
)
from .numbering import AllocatedNumber, IssuingIdentity, SequenceAllocator, format_number
from .parties import CompanyProfile, ContactRecord, PartyResolver, sequence_prefixes
from .pdf import InvoiceRenderer, render
from .xrechnung import check_structure, serialize, version

__all__ = [
    "write_package",
    "verify_package",
    "build_cancellation",
    "check_cancellable",
    "ValidationIssue",
    "ValidationResult",
    "format_validation_errors",
    "validate",
    "Address",
    "BankDetails",
    "ContactPerson",
    "DocumentClass",
    "ExternalParty",
    "Invoice",
    "InvoiceStatus",
    "LineItem",
    "PartySnapshot",
    "SelfParty",
    "Totals",
    "compute_document_totals",
    "compute_totals",
    "DocumentGenerationError",
    "InvoicingError",
    "NotFoundError",
    "NumberingError",
    "PersistenceError",
    "StateConflictError",
    "StorageError",
    "ValidationError",
    "embed",
    "extract_xml",
    "CancellationResult",
    "FinalizationConfig",
    "FinalizationResult",
    "InvoiceFinalizer",
    "AllocatedNumber",
    "IssuingIdentity",
    "SequenceAllocator",
    "format_number",
    "CompanyProfile",
    "ContactRecord",
    "PartyResolver",
    "sequence_prefixes",
    "InvoiceRenderer",
    "render",
    "check_structure",
    "serialize",
    "version",
]
