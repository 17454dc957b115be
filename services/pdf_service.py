import base64
import binascii
import io
import logging
from typing import Dict, List

from PIL import Image, UnidentifiedImageError
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from schemas.signing import SigningField, SigningFieldType
from services.exceptions import InvalidRequest

logger = logging.getLogger(__name__)

FONT_NAME = "Helvetica"
MAX_FONT_SIZE = 12


def image_to_pdf(image_bytes: bytes) -> bytes:
    """Wrap a PNG/JPEG scan in a single page the size of the image."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            img = img.convert("RGB")
            width, height = img.size
            buffer = io.BytesIO()
            img.save(buffer, format="PNG")
    except (UnidentifiedImageError, OSError):
        raise InvalidRequest("The document is not a readable image")

    buffer.seek(0)
    packet = io.BytesIO()
    c = canvas.Canvas(packet, pagesize=(width, height))
    c.drawImage(ImageReader(buffer), 0, 0, width=width, height=height)
    c.showPage()
    c.save()
    return packet.getvalue()


def _decode_signature(value: str) -> bytes:
    # data:image/png;base64,....
    _, _, encoded = value.partition(",")
    return base64.b64decode(encoded or value, validate=False)


def _printable(value: str) -> tuple:
    """Standard PDF fonts only cover cp1252; anything else is drawn as '?' in grey."""
    try:
        value.encode("cp1252")
        return value, (0, 0, 0)
    except UnicodeEncodeError:
        return value.encode("cp1252", "replace").decode("cp1252") or "?", (0.3, 0.3, 0.3)


def _draw_field(c: canvas.Canvas, field: SigningField, value: str, page_width: float, page_height: float):
    x = field.x * page_width
    w = field.width * page_width
    h = field.height * page_height
    # Field coordinates are top-left based, PDF space is bottom-left based.
    y = page_height - field.y * page_height - h

    if field.type == SigningFieldType.SIGNATURE:
        try:
            image = ImageReader(io.BytesIO(_decode_signature(value)))
            img_w, img_h = image.getSize()
        except (binascii.Error, OSError, ValueError):
            logger.warning("Skipping unreadable signature image for field %s", field.id)
            return
        scale = min(w / img_w, h / img_h)
        draw_w, draw_h = img_w * scale, img_h * scale
        c.drawImage(image, x, y + (h - draw_h) / 2, width=draw_w, height=draw_h, mask="auto")
        return

    text, color = _printable(value)
    font_size = min(MAX_FONT_SIZE, h * 0.7)
    c.setFillColorRGB(*color)
    c.setFont(FONT_NAME, font_size)
    # Trim to the box rather than letting text run over neighbouring fields.
    while text and c.stringWidth(text, FONT_NAME, font_size) > w - 4:
        text = text[:-1]
    c.drawString(x + 2, y + h / 2 - font_size / 3, text)


def stamp_fields(
    document: bytes, file_type: str, fields: List[SigningField], field_values: Dict[str, str]
) -> bytes:
    """
    Draw each captured value inside its field box and return the signed PDF.

    Fields pointing past the last page land on the last page. Empty values are skipped.
    """
    is_pdf = "pdf" in (file_type or "").lower() or document[:5] == b"%PDF-"
    source = document if is_pdf else image_to_pdf(document)

    try:
        reader = PdfReader(io.BytesIO(source))
        pages = reader.pages
        page_count = len(pages)
    except PdfReadError as e:
        raise InvalidRequest(f"The document is not a readable PDF: {e}")
    if page_count == 0:
        raise InvalidRequest("The document has no pages")

    by_page: Dict[int, List[SigningField]] = {}
    for field in fields:
        if not field_values.get(field.id):
            continue
        index = min(field.page - 1, page_count - 1)
        by_page.setdefault(index, []).append(field)

    writer = PdfWriter()
    for index, page in enumerate(pages):
        if index in by_page:
            width = float(page.mediabox.width)
            height = float(page.mediabox.height)
            packet = io.BytesIO()
            c = canvas.Canvas(packet, pagesize=(width, height))
            for field in by_page[index]:
                _draw_field(c, field, field_values[field.id], width, height)
            c.save()
            packet.seek(0)
            page.merge_page(PdfReader(packet).pages[0])
        writer.add_page(page)

    output = io.BytesIO()
    writer.write(output)
    return output.getvalue()
