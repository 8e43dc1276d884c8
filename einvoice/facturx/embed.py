"""Hybrid-PDF (PDF/A-3) mit eingebetteter XRechnung-XML.

Der Seiteninhalt des gerenderten PDFs bleibt unverändert; ergänzt werden nur
das eingebettete XML als Associated File, XMP-Metadaten und Document-Info.
"""

from __future__ import annotations

import hashlib
import io
from datetime import datetime, timezone
from html import escape
from typing import Optional

import pikepdf

from backend.core.observability.logging import logger

from ..errors import DocumentGenerationError

DEFAULT_XML_FILENAME = "xrechnung.xml"
EMBED_PRODUCER = "einvoice-core Hybrid Embedder"
FACTURX_CONFORMANCE_LEVEL = "XRECHNUNG"
FACTURX_NS = "urn:factur-x:pdfa:CrossIndustryDocument:invoice:1p0#"


def _utc(timestamp: datetime) -> datetime:
    if timestamp.tzinfo is None:
        return timestamp.replace(tzinfo=timezone.utc)
    return timestamp.astimezone(timezone.utc)


def _pdf_date(timestamp: datetime) -> str:
    return timestamp.strftime("D:%Y%m%d%H%M%S+00'00'")


def _xmp_packet(*, title: str, author: str, producer: str, timestamp: str, filename: str) -> str:
    title, author, producer = escape(title), escape(author), escape(producer)
    return f"""<?xpacket begin='' id='W5M0MpCehiHzreSzNTczkc9d'?>
<x:xmpmeta xmlns:x='adobe:ns:meta/'>
  <rdf:RDF xmlns:rdf='http://www.w3.org/1999/02/22-rdf-syntax-ns#'>
    <rdf:Description rdf:about='' xmlns:pdfaid='http://www.aiim.org/pdfa/ns/id/'>
      <pdfaid:part>3</pdfaid:part>
      <pdfaid:conformance>B</pdfaid:conformance>
    </rdf:Description>
    <rdf:Description rdf:about='' xmlns:dc='http://purl.org/dc/elements/1.1/'>
      <dc:title><rdf:Alt><rdf:li xml:lang='x-default'>{title}</rdf:li></rdf:Alt></dc:title>
      <dc:creator><rdf:Seq><rdf:li>{author}</rdf:li></rdf:Seq></dc:creator>
    </rdf:Description>
    <rdf:Description rdf:about='' xmlns:pdf='http://ns.adobe.com/pdf/1.3/'>
      <pdf:Producer>{producer}</pdf:Producer>
    </rdf:Description>
    <rdf:Description rdf:about='' xmlns:xmp='http://ns.adobe.com/xap/1.0/'>
      <xmp:CreateDate>{timestamp}</xmp:CreateDate>
      <xmp:ModifyDate>{timestamp}</xmp:ModifyDate>
      <xmp:CreatorTool>{producer}</xmp:CreatorTool>
    </rdf:Description>
    <rdf:Description rdf:about='' xmlns:fx='{FACTURX_NS}'>
      <fx:DocumentType>INVOICE</fx:DocumentType>
      <fx:DocumentFileName>{escape(filename)}</fx:DocumentFileName>
      <fx:Version>1.0</fx:Version>
      <fx:ConformanceLevel>{FACTURX_CONFORMANCE_LEVEL}</fx:ConformanceLevel>
    </rdf:Description>
  </rdf:RDF>
</x:xmpmeta>
<?xpacket end='w'?>"""


def embed(
    pdf_bytes: bytes,
    xml_bytes: bytes,
    *,
    title: str,
    author: str,
    timestamp: datetime,
    filename: str = DEFAULT_XML_FILENAME,
    producer: str = EMBED_PRODUCER,
) -> bytes:
    """Bettet ``xml_bytes`` als ``/Alternative``-Anhang in ``pdf_bytes`` ein.

    Gleiche Eingaben liefern gleiche Bytes (``deterministic_id``). Jeder Fehler
    wird als ``DocumentGenerationError`` gemeldet.
    """

    moment = _utc(timestamp)
    pdf_date = _pdf_date(moment)
    xmp_date = moment.isoformat().replace("+00:00", "Z")

    try:
        pdf_doc = pikepdf.Pdf.open(io.BytesIO(pdf_bytes))
    except (pikepdf.PdfError, ValueError, TypeError) as exc:
        logger.error("hybrid_embed_failed", extra={"stage": "open", "error": str(exc)})
        raise DocumentGenerationError(f"Rendered PDF could not be opened: {exc}") from exc

    try:
        with pdf_doc:
            xml_stream = pikepdf.Stream(pdf_doc, xml_bytes)
            xml_stream.Type = pikepdf.Name.EmbeddedFile
            xml_stream.Subtype = pikepdf.Name("/text/xml")
            params = pikepdf.Dictionary()
            params.Size = len(xml_bytes)
            params.CreationDate = pikepdf.String(pdf_date)
            params.ModDate = pikepdf.String(pdf_date)
            params.CheckSum = pikepdf.String(hashlib.md5(xml_bytes).digest())
            xml_stream.Params = params

            filespec = pdf_doc.make_indirect(
                pikepdf.Dictionary(
                    Type=pikepdf.Name.Filespec,
                    F=pikepdf.String(filename),
                    UF=pikepdf.String(filename),
                    Desc=pikepdf.String("XRechnung CII"),
                    EF=pikepdf.Dictionary(F=xml_stream, UF=xml_stream),
                    AFRelationship=pikepdf.Name.Alternative,
                )
            )

            pdf_doc.Root.Names = pikepdf.Dictionary(
                EmbeddedFiles=pikepdf.Dictionary(
                    Names=pikepdf.Array([pikepdf.String(filename), filespec])
                )
            )
            pdf_doc.Root.AF = pikepdf.Array([filespec])

            metadata = pikepdf.Stream(
                pdf_doc,
                _xmp_packet(
                    title=title,
                    author=author,
                    producer=producer,
                    timestamp=xmp_date,
                    filename=filename,
                ).encode("utf-8"),
            )
            metadata.Type = pikepdf.Name.Metadata
            metadata.Subtype = pikepdf.Name.XML
            pdf_doc.Root.Metadata = metadata

            pdf_doc.docinfo.Title = pikepdf.String(title)
            pdf_doc.docinfo.Author = pikepdf.String(author)
            pdf_doc.docinfo.Creator = pikepdf.String(producer)
            pdf_doc.docinfo.Producer = pikepdf.String(producer)
            pdf_doc.docinfo.CreationDate = pikepdf.String(pdf_date)
            pdf_doc.docinfo.ModDate = pikepdf.String(pdf_date)

            output = io.BytesIO()
            pdf_doc.save(output, compress_streams=True, deterministic_id=True)
    except (pikepdf.PdfError, ValueError, TypeError, KeyError, OSError) as exc:
        logger.error("hybrid_embed_failed", extra={"stage": "embed", "error": str(exc)})
        raise DocumentGenerationError(f"XML could not be embedded into PDF: {exc}") from exc

    return output.getvalue()


def extract_xml(pdf_bytes: bytes, filename: Optional[str] = None) -> bytes:
    """Liest das eingebettete XML wieder aus (erster Anhang oder ``filename``)."""

    try:
        with pikepdf.Pdf.open(io.BytesIO(pdf_bytes)) as pdf_doc:
            for name, attachment in pdf_doc.attachments.items():
                if filename is None or name == filename:
                    return attachment.get_file().read_bytes()
    except pikepdf.PdfError as exc:
        raise DocumentGenerationError(f"PDF could not be read: {exc}") from exc
    raise DocumentGenerationError(f"No embedded XML found ({filename or 'any'})")
