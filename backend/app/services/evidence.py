"""Localized evidence pages appended to the finalized document.

Layout is a single top-down cursor over a fixed content width. ``plan_layout``
decides where every element lands (page and vertical position) without
touching reportlab, so pagination can be checked on its own; the composer
then draws each placed element.
"""
from __future__ import annotations

import io
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Sequence

from pypdf import PdfReader, PdfWriter
from reportlab.lib import colors
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from app.schemas.certificate import CertificateInfo

logger = logging.getLogger(__name__)

PRIMARY = colors.HexColor("#11284b")
ACCENT = colors.HexColor("#0f5298")
MUTED = colors.HexColor("#4f5d75")
SUBTLE = colors.HexColor("#5f6d7a")
CARD_BACKGROUND = colors.HexColor("#f4f6fa")
CARD_BORDER = colors.HexColor("#d9dee7")
BANNER_SUBTITLE = colors.HexColor("#d9e2f1")


@dataclass(frozen=True)
class EvidenceLayout:
    page_width: float = 595.0
    page_height: float = 842.0
    margin: float = 50.0

    header_height: float = 70.0
    section_gap: float = 16.0

    info_card_base_height: float = 70.0
    info_line_height: float = 13.0

    signers_header_height: float = 24.0

    card_base_height: float = 62.0
    card_line_increment: float = 12.0
    card_gap: float = 10.0
    card_padding: float = 12.0
    accent_width: float = 4.0
    signature_box_width: float = 120.0
    signature_box_height: float = 38.0

    footer_height: float = 36.0

    title_font_size: float = 18.0
    subtitle_font_size: float = 10.0
    heading_font_size: float = 11.0
    body_font_size: float = 9.0
    small_font_size: float = 8.0

    title_max_chars: int = 60
    name_max_chars: int = 40
    email_max_chars: int = 60
    user_agent_max_chars: int = 80
    user_agent_max_chars_with_image: int = 50

    @property
    def content_width(self) -> float:
        return self.page_width - 2 * self.margin

    @property
    def top(self) -> float:
        return self.page_height - self.margin

    def card_height(self, *, has_ip: bool, has_user_agent: bool) -> float:
        extra_lines = int(has_ip) + int(has_user_agent)
        return self.card_base_height + extra_lines * self.card_line_increment

    def info_card_height(self, extra_lines: int) -> float:
        return self.info_card_base_height + extra_lines * self.info_line_height


DEFAULT_LAYOUT = EvidenceLayout()


LABELS: dict[str, dict[str, str]] = {
    "en": {
        "title": "Signature Evidence",
        "subtitle": "Audit record of the electronic signatures collected for this document",
        "document": "Document",
        "document_id": "Document ID",
        "generated_at": "Generated at",
        "original_hash": "Original SHA-256",
        "certificate": "Digital certificate",
        "certificate_issuer": "Issued by",
        "signers": "Signers ({count})",
        "email": "Email",
        "signed_at": "Signed at",
        "ip_address": "IP address",
        "user_agent": "User agent",
        "footer_1": "This page is an integral part of the signed document and records every signature collected.",
        "footer_2": "Integrity can be checked by comparing the SHA-256 fingerprint of the stored artifact.",
        "page": "Page {page} of {total}",
    },
    "pt-br": {
        "title": "Evidências de Assinatura",
        "subtitle": "Registro de auditoria das assinaturas eletrônicas coletadas para este documento",
        "document": "Documento",
        "document_id": "ID do documento",
        "generated_at": "Gerado em",
        "original_hash": "SHA-256 original",
        "certificate": "Certificado digital",
        "certificate_issuer": "Emitido por",
        "signers": "Signatários ({count})",
        "email": "E-mail",
        "signed_at": "Assinado em",
        "ip_address": "Endereço IP",
        "user_agent": "Navegador",
        "footer_1": "Esta página é parte integrante do documento assinado e registra todas as assinaturas coletadas.",
        "footer_2": "A integridade pode ser conferida comparando a impressão SHA-256 do arquivo armazenado.",
        "page": "Página {page} de {total}",
    },
    "es": {
        "title": "Evidencia de Firma",
        "subtitle": "Registro de auditoría de las firmas electrónicas recogidas para este documento",
        "document": "Documento",
        "document_id": "ID del documento",
        "generated_at": "Generado el",
        "original_hash": "SHA-256 original",
        "certificate": "Certificado digital",
        "certificate_issuer": "Emitido por",
        "signers": "Firmantes ({count})",
        "email": "Correo",
        "signed_at": "Firmado el",
        "ip_address": "Dirección IP",
        "user_agent": "Navegador",
        "footer_1": "Esta página forma parte integral del documento firmado y registra todas las firmas recogidas.",
        "footer_2": "La integridad puede comprobarse comparando la huella SHA-256 del archivo almacenado.",
        "page": "Página {page} de {total}",
    },
}

DATETIME_FORMATS = {
    "en": "%Y-%m-%d %H:%M:%S UTC",
    "pt-br": "%d/%m/%Y %H:%M:%S UTC",
    "es": "%d/%m/%Y %H:%M:%S UTC",
}

FALLBACK_LOCALE = "en"
_LOCALE_ALIASES = {"pt": "pt-br", "pt-pt": "pt-br"}


def resolve_locale(tag: str | None) -> str:
    normalized = (tag or "").strip().lower().replace("_", "-")
    if normalized in LABELS:
        return normalized
    if normalized in _LOCALE_ALIASES:
        return _LOCALE_ALIASES[normalized]
    base = normalized.split("-", 1)[0]
    if base in LABELS:
        return base
    return _LOCALE_ALIASES.get(base, FALLBACK_LOCALE)


def format_timestamp(value: datetime | None, locale: str) -> str:
    if value is None:
        return "-"
    return value.strftime(DATETIME_FORMATS.get(locale, DATETIME_FORMATS[FALLBACK_LOCALE]))


def truncate(value: str | None, limit: int) -> str:
    text = (value or "").strip()
    if len(text) <= limit:
        return text
    return text[: max(limit - 3, 0)] + "..."


@dataclass(frozen=True)
class SignerEvidence:
    name: str
    email: str
    signed_at: datetime | None
    ip_address: str | None = None
    user_agent: str | None = None
    signature_image: bytes | None = None


@dataclass(frozen=True)
class PlacedElement:
    kind: str  # header | info | signers_header | signer | footer
    page: int
    top: float
    height: float
    index: int | None = None


@dataclass
class EvidencePlan:
    elements: list[PlacedElement] = field(default_factory=list)

    @property
    def page_count(self) -> int:
        return max((element.page for element in self.elements), default=0) + 1


def plan_layout(
    layout: EvidenceLayout,
    info_height: float,
    card_heights: Sequence[float],
) -> EvidencePlan:
    plan = EvidencePlan()
    page = 0
    cursor = layout.top

    def place(kind: str, height: float, gap: float, index: int | None = None) -> None:
        nonlocal page, cursor
        if cursor - layout.margin < height:
            page += 1
            cursor = layout.top
        plan.elements.append(PlacedElement(kind=kind, page=page, top=cursor, height=height, index=index))
        cursor -= height + gap

    place("header", layout.header_height, layout.section_gap)
    place("info", info_height, layout.section_gap)
    place("signers_header", layout.signers_header_height, 0.0)
    for index, height in enumerate(card_heights):
        place("signer", height, layout.card_gap, index=index)
    place("footer", layout.footer_height, 0.0)
    return plan


class EvidencePageComposer:
    def __init__(self, layout: EvidenceLayout = DEFAULT_LAYOUT) -> None:
        self.layout = layout

    def card_heights(self, signers: Sequence[SignerEvidence]) -> list[float]:
        return [
            self.layout.card_height(has_ip=bool(signer.ip_address), has_user_agent=bool(signer.user_agent))
            for signer in signers
        ]

    def compose(
        self,
        pdf_bytes: bytes,
        *,
        title: str,
        signers: Sequence[SignerEvidence],
        generated_at: datetime,
        language: str | None = None,
        document_id: str | None = None,
        original_hash: str | None = None,
        certificate: CertificateInfo | None = None,
    ) -> bytes:
        """Append the evidence page(s) to ``pdf_bytes`` and return the new document."""
        evidence = self.render(
            title=title,
            signers=signers,
            generated_at=generated_at,
            language=language,
            document_id=document_id,
            original_hash=original_hash,
            certificate=certificate,
        )
        writer = PdfWriter()
        for source in (pdf_bytes, evidence):
            for page in PdfReader(io.BytesIO(source)).pages:
                writer.add_page(page)
        output = io.BytesIO()
        writer.write(output)
        return output.getvalue()

    def render(
        self,
        *,
        title: str,
        signers: Sequence[SignerEvidence],
        generated_at: datetime,
        language: str | None = None,
        document_id: str | None = None,
        original_hash: str | None = None,
        certificate: CertificateInfo | None = None,
    ) -> bytes:
        layout = self.layout
        locale = resolve_locale(language)
        labels = LABELS[locale]

        info_lines = [
            (labels["document"], truncate(title, layout.title_max_chars)),
            (labels["generated_at"], format_timestamp(generated_at, locale)),
        ]
        if document_id:
            info_lines.append((labels["document_id"], str(document_id)))
        if original_hash:
            info_lines.append((labels["original_hash"], original_hash))
        if certificate:
            info_lines.append((labels["certificate"], truncate(certificate.subject, layout.title_max_chars)))
            info_lines.append((labels["certificate_issuer"], truncate(certificate.issuer, layout.title_max_chars)))
        info_height = layout.info_card_height(max(len(info_lines) - 4, 0))

        plan = plan_layout(layout, info_height, self.card_heights(signers))
        total_pages = plan.page_count

        stream = io.BytesIO()
        pdf = canvas.Canvas(stream, pagesize=(layout.page_width, layout.page_height))
        pdf.setTitle(f"{labels['title']} - {truncate(title, layout.title_max_chars)}")
        current_page = 0
        for element in plan.elements:
            while element.page > current_page:
                self._draw_page_number(pdf, labels, current_page, total_pages)
                pdf.showPage()
                current_page += 1
            if element.kind == "header":
                self._draw_header(pdf, element, labels)
            elif element.kind == "info":
                self._draw_info_card(pdf, element, info_lines)
            elif element.kind == "signers_header":
                self._draw_signers_header(pdf, element, labels, len(signers))
            elif element.kind == "signer" and element.index is not None:
                self._draw_signer_card(pdf, element, labels, locale, element.index, signers[element.index])
            elif element.kind == "footer":
                self._draw_footer(pdf, element, labels)
        self._draw_page_number(pdf, labels, current_page, total_pages)
        pdf.showPage()
        pdf.save()
        return stream.getvalue()

    # Drawing -----------------------------------------------------------------

    def _draw_header(self, pdf: canvas.Canvas, element: PlacedElement, labels: dict[str, str]) -> None:
        layout = self.layout
        bottom = element.top - element.height
        pdf.setFillColor(PRIMARY)
        pdf.rect(layout.margin, bottom, layout.content_width, element.height, stroke=0, fill=1)
        pdf.setFillColor(colors.white)
        pdf.setFont("Helvetica-Bold", layout.title_font_size)
        pdf.drawString(layout.margin + 16, element.top - 30, labels["title"])
        pdf.setFillColor(BANNER_SUBTITLE)
        pdf.setFont("Helvetica", layout.subtitle_font_size)
        pdf.drawString(layout.margin + 16, element.top - 50, labels["subtitle"])

    def _draw_card_background(self, pdf: canvas.Canvas, element: PlacedElement) -> None:
        layout = self.layout
        pdf.setFillColor(CARD_BACKGROUND)
        pdf.setStrokeColor(CARD_BORDER)
        pdf.setLineWidth(0.6)
        pdf.roundRect(
            layout.margin,
            element.top - element.height,
            layout.content_width,
            element.height,
            6,
            stroke=1,
            fill=1,
        )

    def _draw_info_card(self, pdf: canvas.Canvas, element: PlacedElement, lines: list[tuple[str, str]]) -> None:
        layout = self.layout
        self._draw_card_background(pdf, element)
        x = layout.margin + layout.card_padding
        y = element.top - layout.card_padding - layout.body_font_size
        for label, value in lines:
            pdf.setFillColor(MUTED)
            pdf.setFont("Helvetica-Bold", layout.body_font_size)
            caption = f"{label}: "
            pdf.drawString(x, y, caption)
            offset = pdf.stringWidth(caption, "Helvetica-Bold", layout.body_font_size)
            pdf.setFillColor(PRIMARY)
            pdf.setFont("Helvetica", layout.body_font_size)
            pdf.drawString(x + offset, y, value)
            y -= layout.info_line_height

    def _draw_signers_header(
        self, pdf: canvas.Canvas, element: PlacedElement, labels: dict[str, str], count: int
    ) -> None:
        layout = self.layout
        pdf.setFillColor(PRIMARY)
        pdf.setFont("Helvetica-Bold", layout.heading_font_size)
        pdf.drawString(layout.margin, element.top - layout.heading_font_size - 2, labels["signers"].format(count=count))
        pdf.setStrokeColor(CARD_BORDER)
        pdf.setLineWidth(0.8)
        line_y = element.top - element.height + 6
        pdf.line(layout.margin, line_y, layout.margin + layout.content_width, line_y)

    def _draw_signer_card(
        self,
        pdf: canvas.Canvas,
        element: PlacedElement,
        labels: dict[str, str],
        locale: str,
        index: int,
        signer: SignerEvidence,
    ) -> None:
        layout = self.layout
        self._draw_card_background(pdf, element)
        bottom = element.top - element.height
        pdf.setFillColor(ACCENT)
        pdf.rect(layout.margin, bottom, layout.accent_width, element.height, stroke=0, fill=1)

        x = layout.margin + layout.card_padding
        y = element.top - layout.card_padding - layout.body_font_size
        pdf.setFillColor(PRIMARY)
        pdf.setFont("Helvetica-Bold", layout.body_font_size + 1)
        pdf.drawString(x, y, f"{index + 1}. {truncate(signer.name, layout.name_max_chars)}")

        rows = [
            f"{labels['email']}: {truncate(signer.email, layout.email_max_chars)}",
            f"{labels['signed_at']}: {format_timestamp(signer.signed_at, locale)}",
        ]
        small_rows: list[str] = []
        if signer.ip_address:
            small_rows.append(f"{labels['ip_address']}: {signer.ip_address}")
        if signer.user_agent:
            budget = (
                layout.user_agent_max_chars_with_image if signer.signature_image else layout.user_agent_max_chars
            )
            small_rows.append(f"{labels['user_agent']}: {truncate(signer.user_agent, budget)}")

        pdf.setFillColor(MUTED)
        pdf.setFont("Helvetica", layout.body_font_size)
        for row in rows:
            y -= layout.card_line_increment
            pdf.drawString(x, y, row)
        pdf.setFillColor(SUBTLE)
        pdf.setFont("Helvetica", layout.small_font_size)
        for row in small_rows:
            y -= layout.card_line_increment
            pdf.drawString(x, y, row)

        if signer.signature_image:
            self._draw_signature_image(pdf, element, signer.signature_image)

    def _draw_signature_image(self, pdf: canvas.Canvas, element: PlacedElement, data: bytes) -> None:
        layout = self.layout
        box_x = layout.margin + layout.content_width - layout.card_padding - layout.signature_box_width
        box_y = element.top - layout.card_padding - layout.signature_box_height
        pdf.setStrokeColor(CARD_BORDER)
        pdf.setFillColor(colors.white)
        pdf.rect(box_x, box_y, layout.signature_box_width, layout.signature_box_height, stroke=1, fill=1)
        try:
            image = ImageReader(io.BytesIO(data))
            image_width, image_height = image.getSize()
        except (OSError, ValueError) as exc:
            logger.warning("Signature image could not be read for the evidence page: %s", exc)
            return
        scale = min(
            (layout.signature_box_width - 4) / image_width,
            (layout.signature_box_height - 4) / image_height,
        )
        draw_width = image_width * scale
        draw_height = image_height * scale
        pdf.drawImage(
            image,
            box_x + (layout.signature_box_width - draw_width) / 2,
            box_y + (layout.signature_box_height - draw_height) / 2,
            width=draw_width,
            height=draw_height,
            mask="auto",
        )

    def _draw_footer(self, pdf: canvas.Canvas, element: PlacedElement, labels: dict[str, str]) -> None:
        layout = self.layout
        center = layout.page_width / 2
        pdf.setStrokeColor(CARD_BORDER)
        pdf.setLineWidth(0.6)
        pdf.line(layout.margin, element.top - 4, layout.margin + layout.content_width, element.top - 4)
        pdf.setFillColor(SUBTLE)
        pdf.setFont("Helvetica-Oblique", layout.small_font_size)
        pdf.drawCentredString(center, element.top - 18, labels["footer_1"])
        pdf.drawCentredString(center, element.top - 30, labels["footer_2"])

    def _draw_page_number(self, pdf: canvas.Canvas, labels: dict[str, str], page: int, total: int) -> None:
        layout = self.layout
        pdf.setFillColor(SUBTLE)
        pdf.setFont("Helvetica", layout.small_font_size - 1)
        pdf.drawRightString(
            layout.margin + layout.content_width,
            layout.margin / 2,
            labels["page"].format(page=page + 1, total=total),
        )
