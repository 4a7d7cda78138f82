"""
Evidence report generator for simple (locally stamped) signatures.
Creates the PDF audit trail appended to the signed documents.
"""
import io
import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

import qrcode
from PIL import Image
from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.pagesizes import A4
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import mm
from reportlab.lib.utils import ImageReader
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont
from reportlab.platypus import (
    SimpleDocTemplate,
    Paragraph,
    Spacer,
    Table,
    TableStyle,
)

from app.utils.datetime_utils import format_display_datetime, utc_now
from app.utils.formatting import format_location, format_phone, mask_cpf

logger = logging.getLogger(__name__)

# Fonts with Portuguese diacritics, installed in the container image
_FONTS_REGISTERED = False

FONT_PATHS = {
    "DejaVuSans": "/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf",
    "DejaVuSans-Bold": "/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf",
    "FreeSans": "/usr/share/fonts/truetype/freefont/FreeSans.ttf",
    "FreeSansBold": "/usr/share/fonts/truetype/freefont/FreeSansBold.ttf",
}

# Font names to use (set after registration)
FONT_NORMAL = "Helvetica"
FONT_BOLD = "Helvetica-Bold"

QR_SIZE = 22 * mm


def _register_fonts():
    """Register TTF fonts; Helvetica stays as fallback."""
    global _FONTS_REGISTERED, FONT_NORMAL, FONT_BOLD

    if _FONTS_REGISTERED:
        return

    try:
        if os.path.exists(FONT_PATHS["DejaVuSans"]):
            pdfmetrics.registerFont(TTFont("DejaVuSans", FONT_PATHS["DejaVuSans"]))
            FONT_NORMAL = "DejaVuSans"

        if os.path.exists(FONT_PATHS["DejaVuSans-Bold"]):
            pdfmetrics.registerFont(TTFont("DejaVuSans-Bold", FONT_PATHS["DejaVuSans-Bold"]))
            FONT_BOLD = "DejaVuSans-Bold"

    except Exception as e:
        logger.warning(f"Failed to register DejaVu fonts: {e}")

        try:
            if os.path.exists(FONT_PATHS["FreeSans"]):
                pdfmetrics.registerFont(TTFont("FreeSans", FONT_PATHS["FreeSans"]))
                FONT_NORMAL = "FreeSans"

            if os.path.exists(FONT_PATHS["FreeSansBold"]):
                pdfmetrics.registerFont(TTFont("FreeSansBold", FONT_PATHS["FreeSansBold"]))
                FONT_BOLD = "FreeSansBold"

        except Exception as e2:
            logger.warning(f"Failed to register FreeSans fonts: {e2}")

    _FONTS_REGISTERED = True


_register_fonts()


@dataclass
class SignerEvidenceInfo:
    """Signer information for the evidence report."""
    name: str
    cpf: Optional[str]
    email: Optional[str]
    phone: Optional[str]
    signed_at: Optional[datetime]
    ip_address: Optional[str]
    city: Optional[str] = None
    state: Optional[str] = None
    country: Optional[str] = None
    signature_id: Optional[str] = None
    document_name: Optional[str] = None


@dataclass
class DocumentEvidenceInfo:
    """Document information for the evidence report."""
    id: str
    name: str
    signature_mode: str
    completed_at: Optional[datetime]


def generate_qr_png(url: str, size: int = 200) -> bytes:
    """QR code for a URL as PNG bytes."""
    qr = qrcode.QRCode(
        version=1,
        error_correction=qrcode.constants.ERROR_CORRECT_M,
        box_size=4,
        border=1,
    )
    qr.add_data(url)
    qr.make(fit=True)

    img = qr.make_image(fill_color="black", back_color="white").convert("RGB")
    img = img.resize((size, size), Image.Resampling.LANCZOS)

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


class EvidenceReportGenerator:
    """Generates the evidence report PDF for locally signed documents."""

    def __init__(self):
        self.styles = getSampleStyleSheet()
        self._setup_custom_styles()

    def _setup_custom_styles(self):
        self.styles['Normal'].fontName = FONT_NORMAL
        self.styles['Title'].fontName = FONT_BOLD
        self.styles['Heading2'].fontName = FONT_BOLD

        self.styles.add(ParagraphStyle(
            name='Title2',
            parent=self.styles['Title'],
            fontName=FONT_BOLD,
            fontSize=18,
            spaceAfter=12,
        ))
        self.styles.add(ParagraphStyle(
            name='SectionHeader',
            parent=self.styles['Heading2'],
            fontName=FONT_BOLD,
            fontSize=12,
            spaceBefore=12,
            spaceAfter=6,
            textColor=colors.HexColor('#273d60'),
        ))
        self.styles.add(ParagraphStyle(
            name='BodySmall',
            parent=self.styles['Normal'],
            fontName=FONT_NORMAL,
            fontSize=9,
            leading=12,
        ))
        self.styles.add(ParagraphStyle(
            name='Footer',
            parent=self.styles['Normal'],
            fontName=FONT_NORMAL,
            fontSize=8,
            textColor=colors.grey,
            alignment=TA_CENTER,
        ))

    def generate(
        self,
        documents: List[DocumentEvidenceInfo],
        signers: List[SignerEvidenceInfo],
        validation_url: str,
    ) -> bytes:
        """
        Generate the evidence report PDF.

        Args:
            documents: Documents covered by the report (one per grouped file)
            signers: Signers of those documents
            validation_url: Public validation page, also encoded in the QR code

        Returns:
            PDF bytes
        """
        buffer = io.BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=A4,
            rightMargin=20*mm,
            leftMargin=20*mm,
            topMargin=20*mm,
            bottomMargin=20*mm,
            title="Relatório de Evidências",
        )

        elements = []
        elements.append(Paragraph("Relatório de Evidências", self.styles['Title2']))
        elements.append(Paragraph("Registro de assinatura eletrônica", self.styles['Normal']))
        elements.append(Spacer(1, 10*mm))

        elements.append(Paragraph(
            "Documentos" if len(documents) > 1 else "Documento",
            self.styles['SectionHeader'],
        ))
        for document in documents:
            elements.extend(self._build_document_section(document, validation_url))
            elements.append(Spacer(1, 4*mm))

        elements.append(Paragraph("Signatários", self.styles['SectionHeader']))
        elements.extend(self._build_signers_section(signers, show_document=len(documents) > 1))

        elements.append(Spacer(1, 10*mm))
        elements.append(Paragraph(
            f"Gerado em: {format_display_datetime(utc_now())} (horário de Brasília)",
            self.styles['Footer']
        ))
        elements.append(Paragraph(
            "Este relatório é gerado automaticamente e registra as evidências "
            "das assinaturas eletrônicas realizadas no documento.",
            self.styles['Footer']
        ))

        qr_image = ImageReader(io.BytesIO(generate_qr_png(validation_url)))

        def draw_qr(canvas, template):
            canvas.saveState()
            page_width, _ = A4
            x = page_width - template.rightMargin - QR_SIZE
            y = 8*mm
            canvas.drawImage(qr_image, x, y, width=QR_SIZE, height=QR_SIZE)
            canvas.setFont(FONT_NORMAL, 7)
            canvas.setFillColor(colors.grey)
            canvas.drawRightString(x - 3*mm, y + 3*mm, validation_url)
            canvas.restoreState()

        doc.build(elements, onFirstPage=draw_qr, onLaterPages=draw_qr)

        logger.info(f"Generated evidence report for {len(documents)} document(s), {len(signers)} signer(s)")
        return buffer.getvalue()

    def _build_document_section(self, document: DocumentEvidenceInfo, validation_url: str) -> list:
        data = [
            ["Nome:", document.name],
            ["ID:", document.id],
            ["Modalidade:", self._mode_label(document.signature_mode)],
            ["Concluído em:", format_display_datetime(document.completed_at)],
            ["Validação:", validation_url],
        ]

        table = Table(data, colWidths=[40*mm, 130*mm])
        table.setStyle(TableStyle([
            ('FONTNAME', (0, 0), (0, -1), FONT_BOLD),
            ('FONTNAME', (1, 0), (1, -1), FONT_NORMAL),
            ('FONTSIZE', (0, 0), (-1, -1), 9),
            ('VALIGN', (0, 0), (-1, -1), 'TOP'),
            ('BOTTOMPADDING', (0, 0), (-1, -1), 4),
        ]))
        return [table]

    def _build_signers_section(self, signers: List[SignerEvidenceInfo], show_document: bool) -> list:
        elements = []

        for i, signer in enumerate(signers, 1):
            elements.append(Paragraph(f"Signatário #{i}: {signer.name}", self.styles['BodySmall']))

            data = []
            if show_document and signer.document_name:
                data.append(["Documento:", signer.document_name])
            data.extend([
                ["CPF:", mask_cpf(signer.cpf)],
                ["E-mail:", signer.email or "-"],
                ["Telefone:", format_phone(signer.phone)],
                ["Endereço IP:", signer.ip_address or "-"],
                ["Localização:", format_location(signer.city, signer.state, signer.country)],
                ["ID da assinatura:", signer.signature_id or "-"],
                ["Assinado em:", format_display_datetime(signer.signed_at)],
            ])

            table = Table(data, colWidths=[40*mm, 130*mm])
            table.setStyle(TableStyle([
                ('FONTNAME', (0, 0), (0, -1), FONT_BOLD),
                ('FONTNAME', (1, 0), (1, -1), FONT_NORMAL),
                ('FONTSIZE', (0, 0), (-1, -1), 8),
                ('VALIGN', (0, 0), (-1, -1), 'TOP'),
                ('BOTTOMPADDING', (0, 0), (-1, -1), 2),
                ('LEFTPADDING', (0, 0), (-1, -1), 10),
                ('LINEBELOW', (0, -1), (-1, -1), 0.25, colors.lightgrey),
            ]))

            elements.append(table)
            elements.append(Spacer(1, 4*mm))

        return elements

    def _mode_label(self, mode: str) -> str:
        labels = {
            "SIMPLE": "Assinatura eletrônica simples",
            "ADVANCED": "Assinatura eletrônica avançada",
            "QUALIFIED": "Assinatura eletrônica qualificada",
        }
        return labels.get((mode or "").upper(), mode or "-")


# Singleton instance
_evidence_generator: Optional[EvidenceReportGenerator] = None


def get_evidence_generator() -> EvidenceReportGenerator:
    """Get the evidence report generator singleton."""
    global _evidence_generator
    if _evidence_generator is None:
        _evidence_generator = EvidenceReportGenerator()
    return _evidence_generator
