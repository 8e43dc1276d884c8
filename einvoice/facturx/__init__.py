"""Hybrid-PDF (PDF/A-3, Factur-X-Profil XRECHNUNG)."""

from .embed import DEFAULT_XML_FILENAME, embed, extract_xml

__all__ = ["DEFAULT_XML_FILENAME", "embed", "extract_xml"]
