"""Strukturprüfung (STRUCTURE/OFFICIAL) für XRechnung-CII."""

from __future__ import annotations

import os
from dataclasses import asdict, dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path
from typing import Dict, List

from lxml import etree
from lxml.isoschematron import Schematron

from .generator import CII_NAMESPACES, GENERATOR_VERSION, XRECHNUNG_GUIDELINE_ID

TOLERANCE = Decimal("0.01")


@dataclass(frozen=True)
class StructureCheckResult:
    schema_ok: bool
    schematron_ok: bool
    messages: List[str]

    @property
    def ok(self) -> bool:
        return self.schema_ok and self.schematron_ok

    def to_dict(self) -> Dict[str, object]:
        data = asdict(self)
        data["ok"] = self.ok
        return data


RESOURCE_DIR = Path(__file__).resolve().parent / "resources"
OFFICIAL_DIR = RESOURCE_DIR / "official"


def _parse_decimal(text: str) -> Decimal:
    return Decimal(text).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def _strip_ns(tag: str) -> str:
    return tag.split("}", 1)[1] if "}" in tag else tag


def _get_validation_mode() -> str:
    """OFFICIAL nur, wenn XSD-Dateien tatsächlich vorliegen."""
    mode = os.getenv("EINVOICE_VALIDATION_MODE", "structure").lower()
    if mode == "official":
        official_xsd_files = list(OFFICIAL_DIR.glob("*.xsd")) if OFFICIAL_DIR.exists() else []
        if not official_xsd_files:
            return "structure"
    return mode


def _check_with_official(xml_bytes: bytes) -> StructureCheckResult:
    messages: List[str] = []
    xsd_file = sorted(OFFICIAL_DIR.glob("*.xsd"))[0]
    sch_files = sorted(OFFICIAL_DIR.glob("*.sch"))

    try:
        xml_doc = etree.fromstring(xml_bytes)
    except etree.XMLSyntaxError as err:
        messages.append(f"OFFICIAL: XML parse error: {err}")
        return StructureCheckResult(False, False, messages)

    schema = etree.XMLSchema(etree.parse(str(xsd_file)))
    schema_ok = schema.validate(xml_doc)
    if schema_ok:
        messages.append(f"OFFICIAL: schema validation OK ({xsd_file.name})")
    else:
        messages.append(f"OFFICIAL: schema validation failed: {schema.error_log.last_error}")

    schematron_ok = True
    if sch_files:
        schematron = Schematron(etree.parse(str(sch_files[0])))
        schematron_ok = schematron.validate(xml_doc)
        if schematron_ok:
            messages.append(f"OFFICIAL: schematron validation OK ({sch_files[0].name})")
        else:
            messages.append(
                f"OFFICIAL: schematron validation failed: {schematron.error_log.last_error}"
            )
    return StructureCheckResult(schema_ok, schematron_ok, messages)


def _check_structure(xml_bytes: bytes) -> StructureCheckResult:
    messages: List[str] = []
    try:
        root = etree.fromstring(xml_bytes)
    except etree.XMLSyntaxError as err:
        messages.append(f"STRUCTURE: XML parse error: {err}")
        return StructureCheckResult(False, False, messages)

    if _strip_ns(root.tag) != "CrossIndustryInvoice":
        messages.append("STRUCTURE: root element must be 'CrossIndustryInvoice'")
        return StructureCheckResult(False, False, messages)

    ns = CII_NAMESPACES
    guideline = root.findtext(
        "rsm:ExchangedDocumentContext/ram:GuidelineSpecifiedDocumentContextParameter/ram:ID",
        namespaces=ns,
    )
    if guideline != XRECHNUNG_GUIDELINE_ID:
        messages.append("STRUCTURE: guideline mismatch")
        return StructureCheckResult(False, False, messages)

    if not root.findtext("rsm:ExchangedDocument/ram:ID", namespaces=ns):
        messages.append("STRUCTURE: document number missing")
        return StructureCheckResult(False, False, messages)

    settlement = root.find(
        "rsm:SupplyChainTradeTransaction/ram:ApplicableHeaderTradeSettlement", namespaces=ns
    )
    summation = (
        settlement.find("ram:SpecifiedTradeSettlementHeaderMonetarySummation", namespaces=ns)
        if settlement is not None
        else None
    )
    if summation is None:
        messages.append("STRUCTURE: monetary summation missing")
        return StructureCheckResult(False, False, messages)

    try:
        basis = _parse_decimal(summation.findtext("ram:TaxBasisTotalAmount", "0", namespaces=ns))
        tax_total = _parse_decimal(summation.findtext("ram:TaxTotalAmount", "0", namespaces=ns))
        grand_total = _parse_decimal(summation.findtext("ram:GrandTotalAmount", "0", namespaces=ns))
        breakdown_sum = sum(
            (
                _parse_decimal(node.findtext("ram:CalculatedAmount", "0", namespaces=ns))
                for node in settlement.findall("ram:ApplicableTradeTax", namespaces=ns)
            ),
            Decimal("0.00"),
        )
    except InvalidOperation:
        messages.append("STRUCTURE: invalid monetary amount")
        return StructureCheckResult(True, False, messages)

    if abs(breakdown_sum - tax_total) > TOLERANCE:
        messages.append("STRUCTURE: tax breakdown does not add up to the tax total")
        return StructureCheckResult(True, False, messages)
    if abs(basis + tax_total - grand_total) > TOLERANCE:
        messages.append("STRUCTURE: basis plus tax does not match the grand total")
        return StructureCheckResult(True, False, messages)

    messages.append(f"STRUCTURE: XRechnung CII validated ({GENERATOR_VERSION})")
    return StructureCheckResult(True, True, messages)


def check_structure(xml_bytes: bytes) -> StructureCheckResult:
    """Prüft XRechnung-XML je nach ``EINVOICE_VALIDATION_MODE`` (OFFICIAL/STRUCTURE)."""
    if _get_validation_mode() == "official":
        return _check_with_official(xml_bytes)
    return _check_structure(xml_bytes)
