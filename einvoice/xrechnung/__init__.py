"""XRechnung (CII) Serializer und Strukturprüfung."""

from .generator import (
    GENERATOR_VERSION,
    XRECHNUNG_GUIDELINE_ID,
    XRECHNUNG_PROFILE_ID,
    serialize,
    version,
)
from .validator import StructureCheckResult, check_structure

__all__ = [
    "GENERATOR_VERSION",
    "XRECHNUNG_GUIDELINE_ID",
    "XRECHNUNG_PROFILE_ID",
    "serialize",
    "version",
    "StructureCheckResult",
    "check_structure",
]
