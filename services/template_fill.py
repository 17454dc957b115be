import io
import logging
import re
from typing import Dict, List, Optional, Tuple
from zipfile import BadZipFile

import nh3
from docx import Document
from docx.opc.exceptions import PackageNotFoundError
from docx.oxml.ns import qn
from docx.table import Table
from docx.text.paragraph import Paragraph
from markupsafe import escape
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from services.exceptions import InvalidRequest, RenderFailed

logger = logging.getLogger(__name__)

VARIABLE_PATTERN = re.compile(r"\{\{([^}]+)\}\}")

VARIABLE_LABELS = {
    "שם_פרטי": "שם פרטי",
    "שם_משפחה": "שם משפחה",
    "תעודת_זהות": "תעודת זהות",
    "כתובת": "כתובת",
    "עיר": "עיר",
    "טלפון": "טלפון",
    "אימייל": "אימייל",
    "תאריך": "תאריך",
    "מיקוד": "מיקוד",
    "תפקיד": "תפקיד",
    "חברה": "שם חברה",
    "סכום": "סכום",
}

PAGE_HEAD = (
    '<!DOCTYPE html><html dir="rtl"><head><meta charset="utf-8"><style>'
    "html, body { background: #ffffff; color: #000000; margin: 0; }"
    "body { font-family: Arial, sans-serif; line-height: 1.8; padding: 32px; }"
    "table { border-collapse: collapse; } td, th { border: 1px solid #999999; padding: 4px 8px; }"
    "</style></head><body>"
)
PAGE_TAIL = "</body></html>"

# Viewport width matches an A4 page at 96 dpi.
PAGE_WIDTH = 794
PAGE_HEIGHT = 1123


def _run_html(text: str, bold: bool, italic: bool, underline: bool) -> str:
    html = str(escape(text))
    if underline:
        html = f"<u>{html}</u>"
    if italic:
        html = f"<em>{html}</em>"
    if bold:
        html = f"<strong>{html}</strong>"
    return html


def _paragraph_html(paragraph: Paragraph) -> str:
    # Word splits text into runs at every formatting or editing boundary, which can cut a
    # placeholder in two. Runs with equal formatting are joined before escaping.
    chunks: List[Tuple[Tuple[bool, bool, bool], str]] = []
    for run in paragraph.runs:
        key = (bool(run.bold), bool(run.italic), bool(run.underline))
        if chunks and chunks[-1][0] == key:
            chunks[-1] = (key, chunks[-1][1] + run.text)
        else:
            chunks.append((key, run.text))
    return "".join(_run_html(text, *key) for key, text in chunks if text)


def _list_kind(paragraph: Paragraph) -> Optional[str]:
    style = (paragraph.style.name if paragraph.style is not None else "") or ""
    if style.startswith("List Number"):
        return "ol"
    if style.startswith("List") or (paragraph._p.pPr is not None and paragraph._p.pPr.numPr is not None):
        return "ul"
    return None


def _block_html(paragraph: Paragraph) -> str:
    content = _paragraph_html(paragraph)
    style = (paragraph.style.name if paragraph.style is not None else "") or ""
    if style == "Title":
        return f"<h1>{content}</h1>"
    if style.startswith("Heading "):
        level = style.rsplit(" ", 1)[-1]
        if level.isdigit() and 1 <= int(level) <= 6:
            return f"<h{level}>{content}</h{level}>"
    return f"<p>{content}</p>"


def _table_html(table: Table) -> str:
    rows = []
    for row in table.rows:
        cells = []
        for cell in row.cells:
            inner = "".join(_block_html(p) for p in cell.paragraphs)
            cells.append(f"<td>{inner}</td>")
        rows.append(f"<tr>{''.join(cells)}</tr>")
    return f"<table><tbody>{''.join(rows)}</tbody></table>"


def docx_to_html(data: bytes) -> str:
    """Convert a .docx file into simple semantic HTML: headings, paragraphs, lists and tables."""
    try:
        document = Document(io.BytesIO(data))
    except (PackageNotFoundError, BadZipFile, KeyError, ValueError):
        raise InvalidRequest("Could not read the Word file")

    parts: List[str] = []
    open_list: Optional[str] = None
    for child in document.element.body.iterchildren():
        if child.tag == qn("w:p"):
            paragraph = Paragraph(child, document)
            kind = _list_kind(paragraph)
            if kind != open_list:
                if open_list:
                    parts.append(f"</{open_list}>")
                if kind:
                    parts.append(f"<{kind}>")
                open_list = kind
            if kind:
                parts.append(f"<li>{_paragraph_html(paragraph)}</li>")
            elif paragraph.text.strip():
                parts.append(_block_html(paragraph))
        elif child.tag == qn("w:tbl"):
            if open_list:
                parts.append(f"</{open_list}>")
                open_list = None
            parts.append(_table_html(Table(child, document)))
    if open_list:
        parts.append(f"</{open_list}>")
    return "".join(parts)


def extract_variables(html: str) -> List[str]:
    """Placeholder names in order of first appearance, trimmed and without duplicates."""
    seen: Dict[str, None] = {}
    for match in VARIABLE_PATTERN.finditer(html):
        name = match.group(1).strip()
        if name:
            seen.setdefault(name, None)
    return list(seen)


def variable_label(name: str) -> str:
    return VARIABLE_LABELS.get(name) or name.replace("_", " ")


def fill_template(html: str, values: Dict[str, str]) -> str:
    """
    Replace each {{ name }} with its HTML-escaped value and sanitize the result.

    Placeholders whose value is empty are left exactly as written so the gap is obvious in the preview.
    """
    result = html
    for name, value in values.items():
        if not value:
            continue
        pattern = re.compile(r"\{\{\s*" + re.escape(name) + r"\s*\}\}")
        replacement = str(escape(value))
        result = pattern.sub(lambda _: replacement, result)
    return nh3.clean(result)


def missing_variables(variables: List[str], values: Dict[str, str]) -> List[str]:
    return [name for name in variables if not (values.get(name) or "").strip()]


async def render_png(html: str, scale: int = 2) -> bytes:
    """Screenshot the filled document on a white right-to-left page."""
    try:
        async with async_playwright() as p:
            browser = await p.chromium.launch()
            try:
                page = await browser.new_page(
                    viewport={"width": PAGE_WIDTH, "height": PAGE_HEIGHT}, device_scale_factor=scale
                )
                await page.set_content(PAGE_HEAD + html + PAGE_TAIL, wait_until="load")
                return await page.screenshot(full_page=True, type="png")
            finally:
                await browser.close()
    except PlaywrightError as e:
        logger.exception("Template rendering failed")
        raise RenderFailed(f"Could not render the document: {e.message}")


def output_file_name(source_name: str) -> str:
    stem = re.sub(r"\.docx?$", "", source_name or "", flags=re.IGNORECASE)
    return f"{stem or 'document'}.png"


class TemplateRenderer:
    """Word template to filled PNG, ready to be used as the document of a signing request."""

    def __init__(self, scale: int = 2):
        self.scale = scale

    def parse(self, data: bytes) -> Tuple[str, List[str]]:
        html = docx_to_html(data)
        return html, extract_variables(html)

    async def render(self, data: bytes, values: Dict[str, str], file_name: str) -> Tuple[bytes, str]:
        html, variables = self.parse(data)
        missing = missing_variables(variables, values)
        if missing:
            raise InvalidRequest(f"Missing values for: {', '.join(variable_label(v) for v in missing)}")
        png = await render_png(fill_template(html, values), scale=self.scale)
        logger.info("Rendered template %s with %d variables", file_name, len(variables))
        return png, output_file_name(file_name)
