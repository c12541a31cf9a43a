"""Compose exported canvas pages into an A4 multi-page PDF.

Each page PNG is scaled to fit an A4 sheet (preserving aspect ratio) and
centered on a white background. Sheets are rendered at 150 DPI.
"""

from __future__ import annotations

import base64
import io
import logging
from collections.abc import Sequence
from pathlib import Path

from PIL import Image

from easel.workspace.schemas import ExportPage

logger = logging.getLogger(__name__)

PDF_DPI = 150
# A4 is 595.28 x 841.89 points at 72 per inch
A4_SIZE = (round(595.28 / 72 * PDF_DPI), round(841.89 / 72 * PDF_DPI))


def _fit_on_sheet(img: Image.Image) -> Image.Image:
    sheet_w, sheet_h = A4_SIZE
    scale = min(sheet_w / img.width, sheet_h / img.height)
    new_w = max(1, int(img.width * scale))
    new_h = max(1, int(img.height * scale))
    resized = img.resize((new_w, new_h), Image.LANCZOS)

    sheet = Image.new("RGB", A4_SIZE, color=(255, 255, 255))
    offset = ((sheet_w - new_w) // 2, (sheet_h - new_h) // 2)
    if resized.mode in ("RGBA", "LA", "P"):
        rgba = resized.convert("RGBA")
        sheet.paste(rgba, offset, mask=rgba)
    else:
        sheet.paste(resized.convert("RGB"), offset)
    return sheet


def compose_pdf(pages: Sequence[ExportPage]) -> bytes:
    """Return PDF bytes with one A4 page per exported canvas page."""
    if not pages:
        raise ValueError("No pages to export")

    sheets: list[Image.Image] = []
    for page in pages:
        data = base64.b64decode(page.png)
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            sheets.append(_fit_on_sheet(img))

    buf = io.BytesIO()
    sheets[0].save(
        buf,
        format="PDF",
        save_all=True,
        append_images=sheets[1:],
        resolution=PDF_DPI,
    )
    return buf.getvalue()


def export_pdf_to_file(pages: Sequence[ExportPage], output_path: str | Path) -> Path:
    """Write the composed PDF to ``output_path``, creating parent dirs."""
    path = Path(output_path).expanduser()
    pdf_bytes = compose_pdf(pages)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(pdf_bytes)
    logger.info("Exported %d page(s) to %s", len(pages), path)
    return path
