"""PDF-Darstellung von Rechnungen und Stornorechnungen."""

from .renderer import PDF_PRODUCER, InvoiceRenderer, render

__all__ = ["PDF_PRODUCER", "InvoiceRenderer", "render"]
