"""Visuelle Rechnungsdarstellung mit ReportLab.

Das Layout ist fest: A4, 50 pt Rand, Absender oben rechts, Empfänger links,
Positionstabelle mit rechtsbündigen Beträgen, Steuerzeilen je Satz
(aufsteigend) und ein Pflichtangaben-Footer auf jeder Seite. Der Canvas läuft
im ``invariant``-Modus, identische Eingaben ergeben identische Bytes.
"""

from __future__ import annotations

import io
import re
from dataclasses import dataclass
from typing import List, Optional, Sequence

from reportlab.lib import colors
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader, simpleSplit
from reportlab.pdfbase.pdfmetrics import stringWidth
from reportlab.pdfgen import canvas

from backend.core.observability.logging import logger

from .. import i18n
from ..dto import Invoice, LineItem, PartySnapshot
from ..errors import DocumentGenerationError

PAGE_WIDTH, PAGE_HEIGHT = A4
MARGIN = 50
FONT = "Helvetica"
FONT_BOLD = "Helvetica-Bold"
FONT_SIZE = 10
FOOTER_FONT_SIZE = 8
LINE_HEIGHT = 14
ROW_HEIGHT = 20
GRAY = colors.Color(0.4, 0.4, 0.4)

PDF_PRODUCER = "einvoice-core PDF Renderer"


@dataclass(frozen=True)
class TableLayout:
    description_x: float = MARGIN
    quantity_x: float = 300
    unit_x: float = 350
    price_x: float = 410
    total_x: float = 480
    price_right: float = 470
    total_right: float = PAGE_WIDTH - MARGIN
    totals_label_x: float = 350
    max_description_width: float = 240
    # Unterhalb dieser Höhe beginnt eine neue Seite
    bottom_limit: float = MARGIN + 60


@dataclass(frozen=True)
class LogoLimits:
    max_width: float = 120
    max_height: float = 60


def sanitize_text(text: Optional[str]) -> str:
    """Entfernt Zeilenumbrüche und mehrfache Leerzeichen."""

    if not text:
        return ""
    return re.sub(r"\s+", " ", re.sub(r"[\r\n]+", " ", str(text))).strip()


def truncate_to_width(text: str, max_width: float, *, font: str = FONT, size: int = FONT_SIZE) -> str:
    """Kürzt ``text`` auf ``max_width`` Punkte und hängt ``...`` an."""

    if stringWidth(text, font, size) <= max_width:
        return text
    ellipsis = "..."
    shortened = text
    while shortened and stringWidth(shortened + ellipsis, font, size) > max_width:
        shortened = shortened[:-1]
    return shortened.rstrip() + ellipsis


def scale_logo(width: float, height: float, limits: LogoLimits = LogoLimits()) -> tuple[float, float]:
    """Skaliert in die Box ``max_width`` x ``max_height``, nie vergrößernd."""

    if width <= 0 or height <= 0:
        return 0.0, 0.0
    scale = min(limits.max_width / width, limits.max_height / height, 1)
    return width * scale, height * scale


class _NumberedCanvas(canvas.Canvas):
    """Canvas, der Footer und ``Seite x von y`` erst beim Speichern zeichnet."""

    def __init__(self, *args, footer_lines: Sequence[str] = (), page_template: str = "", **kwargs):
        super().__init__(*args, **kwargs)
        self._saved_page_states: List[dict] = []
        self._footer_lines = list(footer_lines)
        self._page_template = page_template

    def showPage(self) -> None:  # noqa: N802 (ReportLab API)
        self._saved_page_states.append(dict(self.__dict__))
        self._startPage()

    def save(self) -> None:
        total = len(self._saved_page_states)
        for state in self._saved_page_states:
            self.__dict__.update(state)
            self._draw_footer(total)
            super().showPage()
        super().save()

    def _draw_footer(self, total_pages: int) -> None:
        self.saveState()
        self.setFont(FONT, FOOTER_FONT_SIZE)
        self.setFillColor(GRAY)
        y = MARGIN
        for line in self._footer_lines:
            self.drawCentredString(
                PAGE_WIDTH / 2,
                y,
                truncate_to_width(line, PAGE_WIDTH - 2 * MARGIN, size=FOOTER_FONT_SIZE),
            )
            y -= FOOTER_FONT_SIZE + 2
        if self._page_template:
            label = self._page_template.format(page=self._pageNumber, pages=total_pages)
            self.drawRightString(PAGE_WIDTH - MARGIN, MARGIN + LINE_HEIGHT, label)
        self.restoreState()


def _footer_lines(seller: PartySnapshot, t: dict) -> List[str]:
    lines: List[str] = []
    first = [seller.name, ", ".join(p for p in (seller.address.street_line, seller.address.city_line) if p)]
    if seller.contact and seller.contact.phone:
        first.append(f"{t['phone']}: {seller.contact.phone}")
    if seller.email:
        first.append(f"{t['email']}: {seller.email}")
    lines.append(" | ".join(p for p in first if p))

    legal = []
    if seller.court:
        legal.append(f"{t['court']}: {seller.court}")
    if seller.register_number:
        legal.append(f"{t['register_number']}: {seller.register_number}")
    if seller.managing_director:
        legal.append(f"{t['managing_director']}: {seller.managing_director}")
    if legal:
        lines.append(" | ".join(legal))

    if seller.bank and seller.bank.iban:
        bank = [f"{t['iban']}: {seller.bank.iban}"]
        if seller.bank.bic:
            bank.append(f"{t['bic']}: {seller.bank.bic}")
        if seller.bank.bank_name:
            bank.append(seller.bank.bank_name)
        lines.append(" | ".join(bank))
    return [sanitize_text(line) for line in lines]


class _InvoiceDrawing:
    """Zeichenzustand eines einzelnen Render-Vorgangs."""

    def __init__(
        self,
        c: _NumberedCanvas,
        *,
        language: str,
        currency: str,
        layout: TableLayout,
        logo_limits: LogoLimits,
    ) -> None:
        self._c = c
        self._t = i18n.labels(language)
        self._language = language
        self._currency = currency
        self._layout = layout
        self._logo_limits = logo_limits

    def _text(self, text: str, x: float, y: float, *, bold: bool = False, size: int = FONT_SIZE, color=None) -> None:
        c = self._c
        c.setFont(FONT_BOLD if bold else FONT, size)
        c.setFillColor(color or colors.black)
        c.drawString(x, y, sanitize_text(text))

    def _right(self, text: str, x_right: float, y: float, *, bold: bool = False) -> None:
        c = self._c
        c.setFont(FONT_BOLD if bold else FONT, FONT_SIZE)
        c.setFillColor(colors.black)
        c.drawRightString(x_right, y, sanitize_text(text))

    def _rule(self, x1: float, y1: float, x2: float, y2: float) -> None:
        self._c.setLineWidth(0.5)
        self._c.setStrokeColor(colors.black)
        self._c.line(x1, y1, x2, y2)

    def _money(self, amount) -> str:
        return i18n.format_money(amount, self._language, self._currency)

    def _new_page(self) -> float:
        self._c.showPage()
        return PAGE_HEIGHT - MARGIN - 20

    def _ensure_space(self, y: float, needed: float) -> float:
        if y - needed < self._layout.bottom_limit:
            return self._new_page()
        return y

    def logo(self, logo: Optional[bytes]) -> None:
        if not logo:
            return
        try:
            image = ImageReader(io.BytesIO(logo))
            width, height = image.getSize()
        except (OSError, ValueError) as exc:
            logger.warning("pdf_logo_unreadable", extra={"error": str(exc)})
            return
        scaled_w, scaled_h = scale_logo(width, height, self._logo_limits)
        self._c.drawImage(
            image,
            MARGIN,
            PAGE_HEIGHT - MARGIN - scaled_h,
            width=scaled_w,
            height=scaled_h,
            preserveAspectRatio=True,
            mask="auto",
        )

    def seller(self, seller: PartySnapshot) -> None:
        t = self._t
        top = PAGE_HEIGHT - MARGIN
        right = PAGE_WIDTH - MARGIN
        self._right(seller.name, right, top, bold=True)
        lines = [
            seller.address.street_line,
            seller.address.city_line,
            f"{t['tax_number']}: {seller.tax_id}" if seller.tax_id else None,
            f"{t['vat_id']}: {seller.vat_id}" if seller.vat_id else None,
        ]
        if seller.contact and seller.contact.has_any():
            contact = seller.contact
            if contact.name:
                lines.append(f"{t['contact']}: {contact.name}")
            if contact.phone:
                lines.append(f"{t['phone']}: {contact.phone}")
            if contact.email:
                lines.append(f"{t['email']}: {contact.email}")
        for index, line in enumerate(line for line in lines if line):
            self._right(line, right, top - (index + 1) * LINE_HEIGHT)

    def customer(self, invoice: Invoice) -> float:
        buyer = invoice.buyer
        y = PAGE_HEIGHT - 170
        self._text(buyer.name, MARGIN, y)
        self._text(buyer.address.street_line, MARGIN, y - LINE_HEIGHT)
        self._text(buyer.address.city_line, MARGIN, y - 2 * LINE_HEIGHT)
        offset = 3 * LINE_HEIGHT
        extra = [value for value in (buyer.email,) if value]
        if extra:
            offset += 2 * LINE_HEIGHT
            for index, info in enumerate(extra):
                self._text(info, MARGIN, y - offset - index * LINE_HEIGHT, color=GRAY)
        return y - (offset + len(extra) * LINE_HEIGHT + 30)

    def heading(self, invoice: Invoice, title: str, cancellation_of: Optional[str], y: float) -> float:
        t = self._t
        self._text(title, MARGIN, y, bold=True, size=24)
        if cancellation_of:
            y -= 20
            self._text(t["cancels"].format(number=cancellation_of), MARGIN, y, bold=True)
        y -= 40
        rows = [
            f"{t['invoice_number']}: {invoice.invoice_number}",
            f"{t['invoice_date']}: {i18n.format_date(invoice.invoice_date, self._language)}",
            f"{t['service_date']}: "
            f"{i18n.format_date(invoice.service_date or invoice.invoice_date, self._language)}",
        ]
        if invoice.due_date:
            rows.append(f"{t['due_date']}: {i18n.format_date(invoice.due_date, self._language)}")
        if invoice.buyer_reference:
            rows.append(f"{t['buyer_reference']}: {invoice.buyer_reference}")
        for index, row in enumerate(rows):
            self._text(row, MARGIN, y - index * LINE_HEIGHT)
        return y - len(rows) * LINE_HEIGHT

    def text_block(self, text: Optional[str], y: float) -> float:
        if not text:
            return y
        lines = simpleSplit(sanitize_text(text), FONT, FONT_SIZE, PAGE_WIDTH - 2 * MARGIN)
        y -= 20
        for line in lines:
            y = self._ensure_space(y, LINE_HEIGHT)
            self._text(line, MARGIN, y, color=GRAY)
            y -= LINE_HEIGHT
        return y

    def _table_header(self, y: float) -> float:
        t, layout = self._t, self._layout
        self._text(t["description"], layout.description_x, y, bold=True)
        self._text(t["quantity"], layout.quantity_x, y, bold=True)
        self._text(t["unit"], layout.unit_x, y, bold=True)
        self._text(t["price"], layout.price_x, y, bold=True)
        self._text(t["total"], layout.total_x, y, bold=True)
        y -= 5
        self._rule(MARGIN, y, PAGE_WIDTH - MARGIN, y)
        return y - ROW_HEIGHT

    def table(self, items: Sequence[LineItem], y: float) -> float:
        layout = self._layout
        y = self._table_header(y - 30)
        for item in items:
            if y < layout.bottom_limit:
                y = self._table_header(self._new_page())
            description = truncate_to_width(
                sanitize_text(item.description), layout.max_description_width
            )
            self._text(description, layout.description_x, y)
            self._text(i18n.format_quantity(item.quantity, self._language), layout.quantity_x, y)
            self._text(i18n.unit_label(item.unit, self._language), layout.unit_x, y)
            self._right(self._money(item.unit_price), layout.price_right, y)
            self._right(self._money(item.total), layout.total_right, y)
            y -= ROW_HEIGHT
        return y

    def totals(self, invoice: Invoice, y: float) -> float:
        t, layout = self._t, self._layout
        totals = invoice.document_totals()
        needed = 10 + 20 + 18 * len(totals.tax_by_rate) + 25 + LINE_HEIGHT
        y = self._ensure_space(y, needed)

        y -= 10
        self._rule(layout.totals_label_x, y, layout.total_right, y)
        y -= 20
        self._text(f"{t['net_amount']}:", layout.totals_label_x, y)
        self._right(self._money(totals.subtotal), layout.total_right, y)
        for rate, tax in totals.tax_by_rate.items():
            y -= 18
            self._text(f"{t['vat'].format(rate=i18n.format_rate(rate))}:", layout.totals_label_x, y)
            self._right(self._money(tax), layout.total_right, y)
        y -= 10
        self._rule(layout.totals_label_x, y, layout.total_right, y)
        y -= 15
        self._text(f"{t['total_amount']}:", layout.totals_label_x, y, bold=True)
        self._right(self._money(totals.total), layout.total_right, y, bold=True)
        return y

    def bank(self, seller: PartySnapshot, y: float) -> float:
        bank = seller.bank
        if bank is None or not bank.iban:
            return y
        t = self._t
        rows = [f"{t['iban']}: {bank.iban}"]
        if bank.bic:
            rows.append(f"{t['bic']}: {bank.bic}")
        if bank.bank_name:
            rows.append(f"{t['bank_name']}: {bank.bank_name}")
        if bank.account_holder:
            rows.append(f"{t['account_holder']}: {bank.account_holder}")
        y = self._ensure_space(y, 50 + LINE_HEIGHT * len(rows))
        y -= 50
        self._text(f"{t['bank_details']}:", MARGIN, y, bold=True)
        for row in rows:
            y -= LINE_HEIGHT
            self._text(row, MARGIN, y)
        return y


class InvoiceRenderer:
    """Zeichnet eine Rechnung oder Stornorechnung als PDF."""

    def __init__(
        self,
        *,
        producer: str = PDF_PRODUCER,
        layout: TableLayout = TableLayout(),
        logo_limits: LogoLimits = LogoLimits(),
    ) -> None:
        self._producer = producer
        self._layout = layout
        self._logo_limits = logo_limits

    def render(
        self,
        invoice: Invoice,
        *,
        language: Optional[str] = None,
        logo: Optional[bytes] = None,
        cancellation_of: Optional[str] = None,
    ) -> bytes:
        if invoice.seller is None or invoice.buyer is None:
            raise DocumentGenerationError("Invoice parties must be resolved before rendering")
        if not invoice.invoice_number:
            raise DocumentGenerationError("Invoice number must be set before rendering")

        language = i18n.normalize_language(language or invoice.language)
        t = i18n.labels(language)
        title = t["cancellation"] if cancellation_of else t["invoice"]

        buffer = io.BytesIO()
        c = _NumberedCanvas(
            buffer,
            pagesize=A4,
            invariant=1,
            footer_lines=_footer_lines(invoice.seller, t),
            page_template=t["page"],
        )
        c.setTitle(f"{title} {invoice.invoice_number}")
        c.setAuthor(invoice.seller.name)
        c.setCreator(self._producer)
        c.setProducer(self._producer)
        c.setSubject(title)

        drawing = _InvoiceDrawing(
            c,
            language=language,
            currency=invoice.currency,
            layout=self._layout,
            logo_limits=self._logo_limits,
        )
        drawing.logo(logo)
        drawing.seller(invoice.seller)
        y = drawing.customer(invoice)
        y = drawing.heading(invoice, title, cancellation_of, y)
        y = drawing.text_block(invoice.intro_text, y)
        y = drawing.table(invoice.line_items, y)
        y = drawing.totals(invoice, y)
        y = drawing.bank(invoice.seller, y)
        drawing.text_block(invoice.outro_text, y)

        c.showPage()
        c.save()
        return buffer.getvalue()


def render(
    invoice: Invoice,
    language: Optional[str] = None,
    *,
    logo: Optional[bytes] = None,
    cancellation_of: Optional[str] = None,
) -> bytes:
    """Kurzform für ``InvoiceRenderer().render(...)``."""

    return InvoiceRenderer().render(
        invoice, language=language, logo=logo, cancellation_of=cancellation_of
    )
