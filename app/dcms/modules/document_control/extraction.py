"""
Text extraction collaborator.

Extractors never raise: failures come back as ExtractionResult(success=False, error=...).
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from io import BytesIO

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
DOCX_CONTENT_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
TEXT_CONTENT_TYPE = "text/plain"


@dataclass(frozen=True)
class ExtractionResult:
    success: bool
    text: str = ""
    page_count: int | None = None
    error: str | None = None


class TextExtractor:
    def extract(self, data: bytes, *, content_type: str | None, filename: str | None = None) -> ExtractionResult:
        raise NotImplementedError


def _guess_kind(content_type: str | None, filename: str | None) -> str | None:
    ct = (content_type or "").split(";")[0].strip().lower()
    ext = (filename or "").rsplit(".", 1)[-1].lower() if filename and "." in filename else ""
    if ct == PDF_CONTENT_TYPE or ext == "pdf":
        return "pdf"
    if ct == DOCX_CONTENT_TYPE or ext == "docx":
        return "docx"
    if ct == TEXT_CONTENT_TYPE or ext in ("txt", "md"):
        return "text"
    return None


class DefaultTextExtractor(TextExtractor):
    """PDF via pdfplumber, DOCX via python-docx, plain text as UTF-8."""

    def extract(self, data: bytes, *, content_type: str | None, filename: str | None = None) -> ExtractionResult:
        if not data:
            return ExtractionResult(success=False, error="Empty file")
        kind = _guess_kind(content_type, filename)
        if kind == "pdf":
            return self._extract_pdf(data)
        if kind == "docx":
            return self._extract_docx(data)
        if kind == "text":
            return ExtractionResult(success=True, text=data.decode("utf-8", errors="replace"), page_count=1)
        return ExtractionResult(success=False, error=f"Unsupported content type: {content_type or filename}")

    def _extract_pdf(self, data: bytes) -> ExtractionResult:
        import pdfplumber

        try:
            with pdfplumber.open(BytesIO(data)) as pdf:
                pages = [page.extract_text() or "" for page in pdf.pages]
        except Exception as e:
            logger.warning("PDF text extraction failed: %s", e)
            return ExtractionResult(success=False, error=f"PDF extraction failed: {e}")
        return ExtractionResult(success=True, text="\n".join(pages), page_count=len(pages))

    def _extract_docx(self, data: bytes) -> ExtractionResult:
        from docx import Document as DocxDocument

        try:
            doc = DocxDocument(BytesIO(data))
            parts = [(p.text or "").strip() for p in doc.paragraphs]
            for table in doc.tables:
                for row in table.rows:
                    cells = [(c.text or "").strip() for c in row.cells]
                    if any(cells):
                        parts.append(" | ".join(cells))
        except Exception as e:
            logger.warning("DOCX text extraction failed: %s", e)
            return ExtractionResult(success=False, error=f"DOCX extraction failed: {e}")
        return ExtractionResult(success=True, text="\n".join(p for p in parts if p), page_count=None)
