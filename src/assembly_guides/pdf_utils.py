"""PDF page rendering for the vision passes.

Provides:
- render_all_pages: Fetch a PDF and rasterize every page
- render_page: Rasterize a single 1-based page
- count_pages: Page count without rendering anything

Sources are either http(s) URLs (downloaded with httpx) or local file paths.
The bytes are staged in a temporary directory for PyMuPDF and the directory
is removed on every exit path. Blocking file and PyMuPDF work runs in a worker
thread via asyncio.to_thread.

Usage:
    result = await render_all_pages("https://example.com/manual.pdf")
    for page in result.pages:
        print(page.page_number, page.width, page.height, len(page.image))
"""

import asyncio
import io
import tempfile
from dataclasses import dataclass
from pathlib import Path

import fitz  # PyMuPDF
import httpx

from .errors import PdfExtractionError, PdfFetchError
from .logging_config import get_logger

logger = get_logger(__name__)

# 2x the PDF point grid
DEFAULT_DPI = 144

MIME_TYPES = {
    "png": "image/png",
    "jpeg": "image/jpeg",
    "webp": "image/webp",
}


@dataclass
class RenderedPage:
    page_number: int  # 1-based
    image: bytes
    width: int
    height: int
    mime_type: str = "image/png"


@dataclass
class RenderResult:
    pages: list[RenderedPage]
    total_pages: int
    pdf_url: str


async def fetch_pdf_bytes(
    url: str,
    timeout: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> bytes:
    """Load PDF bytes from an http(s) URL or a local path.

    Raises:
        PdfFetchError: Network failure, non-2xx status, or unreadable file
    """
    if not url.startswith(("http://", "https://")):
        try:
            return await asyncio.to_thread(Path(url).read_bytes)
        except OSError as e:
            raise PdfFetchError(f"Cannot read PDF {url}: {e}") from e

    try:
        async with httpx.AsyncClient(
            timeout=timeout, transport=transport, follow_redirects=True
        ) as client:
            response = await client.get(url)
    except httpx.HTTPError as e:
        raise PdfFetchError(f"Failed to fetch PDF {url}: {type(e).__name__}: {e}") from e

    if response.status_code >= 300:
        raise PdfFetchError(f"Failed to fetch PDF {url}: HTTP {response.status_code}")
    return response.content


def _open_document(pdf_bytes: bytes, staging_dir: str) -> fitz.Document:
    path = Path(staging_dir) / "source.pdf"
    path.write_bytes(pdf_bytes)
    try:
        doc = fitz.open(path)
    except RuntimeError as e:
        raise PdfExtractionError(f"Unreadable PDF: {e}") from e
    if not doc.is_pdf or len(doc) == 0:
        doc.close()
        raise PdfExtractionError("Document has no renderable pages")
    return doc


def _rasterize(
    doc: fitz.Document,
    index: int,
    dpi: int,
    fmt: str,
    quality: int,
) -> RenderedPage:
    zoom = dpi / 72.0
    page = doc[index]
    pix = page.get_pixmap(matrix=fitz.Matrix(zoom, zoom), colorspace=fitz.csRGB)
    if pix.width == 0 or pix.height == 0:
        raise PdfExtractionError(f"Page {index + 1} rendered to an empty image")

    if fmt == "webp":
        from PIL import Image

        img = Image.frombytes("RGB", (pix.width, pix.height), pix.samples)
        buf = io.BytesIO()
        img.save(buf, format="WEBP", quality=quality)
        data = buf.getvalue()
    elif fmt == "jpeg":
        data = pix.tobytes("jpeg", quality)
    else:
        data = pix.tobytes("png")

    if not data:
        raise PdfExtractionError(f"Page {index + 1} produced no image data")

    return RenderedPage(
        page_number=index + 1,
        image=data,
        width=pix.width,
        height=pix.height,
        mime_type=MIME_TYPES[fmt],
    )


def _check_format(fmt: str) -> None:
    if fmt not in MIME_TYPES:
        raise ValueError(f"Unsupported image format: {fmt} (use png, jpeg or webp)")


def _render_all_sync(pdf_bytes: bytes, dpi: int, fmt: str, quality: int) -> list[RenderedPage]:
    with tempfile.TemporaryDirectory() as td:
        doc = _open_document(pdf_bytes, td)
        try:
            return [_rasterize(doc, index, dpi, fmt, quality) for index in range(len(doc))]
        finally:
            doc.close()


def _render_one_sync(
    pdf_bytes: bytes, page_number: int, dpi: int, fmt: str, quality: int
) -> RenderedPage:
    with tempfile.TemporaryDirectory() as td:
        doc = _open_document(pdf_bytes, td)
        try:
            if page_number < 1 or page_number > len(doc):
                raise PdfExtractionError(
                    f"Page {page_number} out of range (document has {len(doc)} pages)"
                )
            return _rasterize(doc, page_number - 1, dpi, fmt, quality)
        finally:
            doc.close()


def _count_sync(pdf_bytes: bytes) -> int:
    with tempfile.TemporaryDirectory() as td:
        doc = _open_document(pdf_bytes, td)
        try:
            return len(doc)
        finally:
            doc.close()


async def render_all_pages(
    url: str,
    dpi: int = DEFAULT_DPI,
    fmt: str = "png",
    quality: int = 85,
    timeout: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RenderResult:
    """Render every page of the PDF at `url`, in page order.

    Args:
        url: http(s) URL or local path
        dpi: Render resolution (default 144)
        fmt: "png" (default), "jpeg" or "webp"
        quality: JPEG/WebP quality 1-100
        timeout: Download timeout in seconds
        transport: Optional httpx transport (tests)

    Returns:
        RenderResult with one RenderedPage per page

    Raises:
        PdfFetchError: Source unreachable
        PdfExtractionError: Unreadable document or a page that renders to nothing
    """
    _check_format(fmt)
    pdf_bytes = await fetch_pdf_bytes(url, timeout=timeout, transport=transport)
    pages = await asyncio.to_thread(_render_all_sync, pdf_bytes, dpi, fmt, quality)

    logger.info("Rendered %d pages from %s at %d dpi", len(pages), url, dpi)
    return RenderResult(pages=pages, total_pages=len(pages), pdf_url=url)


async def render_page(
    url: str,
    page_number: int,
    dpi: int = DEFAULT_DPI,
    fmt: str = "png",
    quality: int = 85,
    timeout: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> RenderedPage:
    """Render one 1-based page.

    Raises:
        PdfExtractionError: page_number outside 1..page_count
    """
    _check_format(fmt)
    pdf_bytes = await fetch_pdf_bytes(url, timeout=timeout, transport=transport)
    return await asyncio.to_thread(_render_one_sync, pdf_bytes, page_number, dpi, fmt, quality)


async def count_pages(
    url: str,
    timeout: float = 60.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> int:
    """Get number of pages in a PDF."""
    pdf_bytes = await fetch_pdf_bytes(url, timeout=timeout, transport=transport)
    return await asyncio.to_thread(_count_sync, pdf_bytes)
