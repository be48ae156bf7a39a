"""Certificate rendering: page composition, PDF assembly and signing.

Page one is the first template with the student's name, national ID and
course name drawn on it plus a QR code carrying the certificate id. Page two
is the second template as-is. Both become full-bleed pages of a PDF that is
then signed with the configured key in an incremental update.
"""

import io
import logging
import threading
import uuid
from dataclasses import dataclass
from pathlib import Path

import qrcode
from PIL import Image, ImageDraw, ImageFont
from pyhanko.pdf_utils.incremental_writer import IncrementalPdfFileWriter
from pyhanko.sign import signers
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from app.certificates.schemas import Candidate
from app.core.config import Settings
from app.core.exceptions import RenderError

logger = logging.getLogger(__name__)

FIRST_PAGE_TEMPLATE = "page_1.png"
SECOND_PAGE_TEMPLATE = "page_2.png"
SIGNATURE_FIELD_NAME = "CertificateSignature"

# Distance kept free between the longest text line and the page's right edge
TEXT_RIGHT_MARGIN = 60
QR_SIZE = 180
QR_MARGIN = 60


@dataclass(frozen=True)
class TextField:
    font_file: str
    size: int  # pixels
    left: int
    baseline: int
    color: tuple[int, int, int]
    min_size: int = 12


NAME_FIELD = TextField("Nunito-Italic-VariableFont_wght.ttf", 40, 300, 300, (0, 32, 96))
DNI_FIELD = TextField("Arimo-Italic-VariableFont_wght.ttf", 19, 250, 400, (53, 55, 68))
COURSE_FIELD = TextField("DMSerifText-Regular.ttf", 33, 250, 500, (7, 55, 99))


@dataclass
class RenderedCertificate:
    certificate_id: str
    pdf_bytes: bytes
    candidate: Candidate


def generate_certificate_id() -> str:
    return str(uuid.uuid4())


class CertificateRenderer:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.templates_path = Path(settings.CERTIFICATE_TEMPLATES_PATH)
        self.fonts_path = Path(settings.CERTIFICATE_FONTS_PATH)
        self._signer: signers.SimpleSigner | None = None
        self._signer_lock = threading.Lock()

    def render(self, candidate: Candidate) -> RenderedCertificate:
        """Produce the signed two-page certificate for one candidate.

        Raises:
            RenderError: wrapping whatever failed; no partial output is returned.
        """
        certificate_id = generate_certificate_id()
        pages: list[Image.Image] = []
        try:
            pages.append(
                self._run_step("first_page", self._compose_first_page, candidate, certificate_id)
            )
            pages.append(self._run_step("second_page", self._compose_second_page, candidate))
            pdf_bytes = self._run_step(
                "assemble", self._assemble_pdf, pages, certificate_id, candidate
            )
            signed = self._run_step("sign", self._sign_pdf, pdf_bytes)
        finally:
            for page in pages:
                page.close()

        logger.info(
            "Rendered certificate %s for student=%s course=%s (%d bytes)",
            certificate_id,
            candidate.student_id,
            candidate.course_id,
            len(signed),
        )
        return RenderedCertificate(
            certificate_id=certificate_id, pdf_bytes=signed, candidate=candidate
        )

    @staticmethod
    def _run_step(step, func, *args):
        try:
            return func(*args)
        except RenderError:
            raise
        except Exception as e:
            raise RenderError(f"Error generating certificate ({step}): {e}", step=step) from e

    def _open_template(self, name: str) -> Image.Image:
        with Image.open(self.templates_path / name) as template:
            return template.convert("RGB")

    def _compose_first_page(self, candidate: Candidate, certificate_id: str) -> Image.Image:
        page = self._open_template(FIRST_PAGE_TEMPLATE)
        try:
            draw = ImageDraw.Draw(page)
            self._draw_text(draw, page.width, candidate.full_name, NAME_FIELD)
            if candidate.dni:
                self._draw_text(draw, page.width, candidate.dni, DNI_FIELD)
            self._draw_text(draw, page.width, candidate.course_name, COURSE_FIELD)
            self._paste_qr_code(page, certificate_id)
        except Exception:
            page.close()
            raise
        return page

    def _compose_second_page(self, candidate: Candidate) -> Image.Image:
        # Static for now; dynamic fields for the back page would be drawn here.
        return self._open_template(SECOND_PAGE_TEMPLATE)

    def _draw_text(
        self, draw: ImageDraw.ImageDraw, page_width: int, text: str, field: TextField
    ) -> None:
        max_width = page_width - field.left - TEXT_RIGHT_MARGIN
        font = self._fit_font(draw, text, field, max_width)
        draw.text((field.left, field.baseline), text, font=font, fill=field.color, anchor="ls")

    def _fit_font(
        self, draw: ImageDraw.ImageDraw, text: str, field: TextField, max_width: int
    ) -> ImageFont.FreeTypeFont:
        """Largest font size, from field.size down to field.min_size, that fits max_width."""
        font_path = self.fonts_path / field.font_file
        size = field.size
        while True:
            font = ImageFont.truetype(str(font_path), size)
            if draw.textlength(text, font=font) <= max_width:
                return font
            if size <= field.min_size:
                raise RenderError(
                    f"Text {text!r} does not fit in {max_width}px even at {size}px",
                    step="first_page",
                )
            size -= 1

    def _paste_qr_code(self, page: Image.Image, certificate_id: str) -> None:
        qr = qrcode.QRCode(error_correction=qrcode.constants.ERROR_CORRECT_M, box_size=10, border=2)
        qr.add_data(certificate_id)
        qr.make(fit=True)
        qr_img = qr.make_image(fill_color="black", back_color="white").get_image()
        resized = qr_img.convert("RGB").resize((QR_SIZE, QR_SIZE), Image.Resampling.NEAREST)
        try:
            position = (page.width - QR_SIZE - QR_MARGIN, page.height - QR_SIZE - QR_MARGIN)
            if position[0] < 0 or position[1] < 0:
                raise RenderError(
                    "Template is too small for the verification code", step="first_page"
                )
            page.paste(resized, position)
        finally:
            resized.close()
            qr_img.close()

    def _assemble_pdf(
        self, pages: list[Image.Image], certificate_id: str, candidate: Candidate
    ) -> bytes:
        buffer = io.BytesIO()
        page_width, page_height = self.settings.pdf_page_size
        c = canvas.Canvas(buffer, pagesize=(page_width, page_height))
        c.setTitle(f"Certificado - {candidate.full_name}")
        c.setSubject(candidate.course_name)
        c.setAuthor(self.settings.CERTIFICATE_ISSUER_NAME or self.settings.SIGNATURE_NAME)
        c.setKeywords(certificate_id)

        for page in pages:
            c.drawImage(ImageReader(page), 0, 0, width=page_width, height=page_height)
            c.showPage()
        c.save()

        pdf_bytes = buffer.getvalue()
        buffer.close()
        return pdf_bytes

    def _load_signer(self) -> signers.SimpleSigner:
        with self._signer_lock:
            if self._signer is None:
                passphrase = self.settings.SIGNATURE_PASSWORD
                signer = signers.SimpleSigner.load(
                    key_file=self.settings.SIGNATURE_KEY_PATH,
                    cert_file=self.settings.SIGNATURE_CERT_PATH,
                    key_passphrase=passphrase.encode() if passphrase else None,
                )
                if signer is None:
                    raise RenderError(
                        "Could not load the signing key or certificate", step="sign"
                    )
                self._signer = signer
            return self._signer

    def _sign_pdf(self, pdf_bytes: bytes) -> bytes:
        info = self.settings.signature_info
        metadata = signers.PdfSignatureMetadata(
            field_name=SIGNATURE_FIELD_NAME,
            name=info["Name"] or None,
            location=info["Location"] or None,
            reason=info["Reason"] or None,
            contact_info=info["ContactInfo"] or None,
        )
        writer = IncrementalPdfFileWriter(io.BytesIO(pdf_bytes))
        output = signers.sign_pdf(writer, metadata, signer=self._load_signer())
        return output.getvalue()
