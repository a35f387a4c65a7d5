"""
Text extraction for uploaded document versions.

- .txt is decoded directly
- .pdf uses the embedded text layer (pdfplumber); scanned PDFs without one are
  rasterized with `pdftoppm` and OCR'd with `tesseract`
- .docx paragraphs and table cells are read with python-docx
- images go straight to `tesseract`

Tesseract is run with a language-preference cascade (most specific first) and the
first successful run wins. Every subprocess has a timeout, and all temporary files
live in a TemporaryDirectory that is removed on every exit path.
"""
from __future__ import annotations

import logging
import subprocess
import tempfile
from dataclasses import dataclass
from io import BytesIO
from pathlib import Path

from app.cdms.errors import ExternalFailure, UnsupportedFileType

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = frozenset({".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".webp"})
SUPPORTED_EXTENSIONS = IMAGE_EXTENSIONS | {".pdf", ".docx", ".txt"}

# Hard cap on rasterized pages so a huge scan cannot run away.
MAX_OCR_PAGES = 50


def file_extension(filename: str) -> str:
    return Path(filename or "").suffix.lower()


def _pdf_text_layer(pdf_bytes: bytes) -> str:
    import pdfplumber

    text = []
    with pdfplumber.open(BytesIO(pdf_bytes)) as pdf:
        for page in pdf.pages:
            text.append(page.extract_text() or "")
    return "\n".join(text).strip()


def _docx_text(docx_bytes: bytes) -> str:
    import docx

    d = docx.Document(BytesIO(docx_bytes))
    parts = [p.text for p in d.paragraphs if p.text.strip()]
    for table in d.tables:
        for row in table.rows:
            cells = [c.text.strip() for c in row.cells if c.text.strip()]
            if cells:
                parts.append(" | ".join(cells))
    return "\n".join(parts)


@dataclass
class TextExtractor:
    languages: tuple[str, ...] = ("kaz+rus+eng", "rus+eng", "eng")
    timeout_seconds: int = 60
    tesseract_path: str = "tesseract"
    pdftoppm_path: str = "pdftoppm"
    max_pages: int = MAX_OCR_PAGES

    def supports(self, filename: str) -> bool:
        return file_extension(filename) in SUPPORTED_EXTENSIONS

    def extract(self, file_bytes: bytes, filename: str) -> str:
        ext = file_extension(filename)
        if ext not in SUPPORTED_EXTENSIONS:
            raise UnsupportedFileType(ext)

        if ext == ".txt":
            return file_bytes.decode("utf-8", errors="replace")

        if ext == ".docx":
            try:
                return _docx_text(file_bytes)
            except Exception as e:
                raise ExternalFailure(f"Failed to extract text from DOCX: {e}") from e

        with tempfile.TemporaryDirectory(prefix="cdms-ocr-") as tmp:
            tmp_dir = Path(tmp)
            input_path = tmp_dir / f"input{ext}"
            input_path.write_bytes(file_bytes)

            if ext in IMAGE_EXTENSIONS:
                return self._ocr_image(input_path)

            try:
                text = _pdf_text_layer(file_bytes)
            except Exception as e:
                logger.warning("PDF text layer extraction failed, falling back to OCR: %s", e)
                text = ""
            if text:
                return text
            return self._ocr_pdf(input_path, tmp_dir)

    # -- subprocess helpers -------------------------------------------------

    def _run(self, args: list[str]) -> subprocess.CompletedProcess:
        try:
            return subprocess.run(
                args,
                capture_output=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except subprocess.TimeoutExpired as e:
            raise ExternalFailure(f"{args[0]} timed out after {self.timeout_seconds}s") from e
        except FileNotFoundError as e:
            raise ExternalFailure(f"{args[0]} is not installed") from e

    def _ocr_image(self, image_path: Path) -> str:
        errors: list[str] = []
        for lang in self.languages:
            proc = self._run([self.tesseract_path, str(image_path), "stdout", "-l", lang])
            if proc.returncode == 0:
                return proc.stdout.decode("utf-8", errors="replace")
            msg = proc.stderr.decode("utf-8", errors="replace").strip()
            logger.debug("tesseract failed (lang=%s): %s", lang, msg[:200])
            errors.append(f"lang={lang}: {msg[:200]}")
        raise ExternalFailure("tesseract failed for every configured language", attempts=errors)

    def _ocr_pdf(self, pdf_path: Path, tmp_dir: Path) -> str:
        base = tmp_dir / "page"
        proc = self._run([self.pdftoppm_path, "-r", "300", "-png", str(pdf_path), str(base)])
        if proc.returncode != 0:
            raise ExternalFailure(
                f"pdftoppm failed: {proc.stderr.decode('utf-8', errors='replace').strip()[:200]}"
            )

        pages = sorted(tmp_dir.glob("page-*.png"), key=lambda p: int(p.stem.rsplit("-", 1)[-1]))
        parts = []
        for page in pages[: self.max_pages]:
            parts.append(self._ocr_image(page))
        logger.info("OCR complete: pages=%s", len(parts))
        return "\n\n".join(parts)


def extractor_from_config(config: dict) -> TextExtractor:
    return TextExtractor(
        languages=tuple(config.get("OCR_LANGUAGES") or ("eng",)),
        timeout_seconds=int(config.get("OCR_TIMEOUT_SECONDS") or 60),
        tesseract_path=config.get("TESSERACT_PATH") or "tesseract",
        pdftoppm_path=config.get("PDFTOPPM_PATH") or "pdftoppm",
    )
