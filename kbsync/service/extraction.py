from __future__ import annotations

import io
from pathlib import PurePosixPath

from docx import Document as DocxDocument
from pypdf import PdfReader


_PDF_TYPES = {"application/pdf"}
_DOCX_TYPES = {"application/vnd.openxmlformats-officedocument.wordprocessingml.document"}


class ExtractionError(Exception):
    """Raised when a document cannot be turned into text."""


class TextExtractor:
    """Turns uploaded document bytes into plain text for the snapshot."""

    def extract(self, data: bytes, content_type: str, file_name: str) -> str:
        kind = self._kind(content_type, file_name)
        if kind == "pdf":
            return self._extract_pdf(data, file_name)
        if kind == "docx":
            return self._extract_docx(data, file_name)
        return data.decode("utf-8", errors="replace")

    @staticmethod
    def _kind(content_type: str, file_name: str) -> str:
        base_type = (content_type or "").split(";", 1)[0].strip().lower()
        suffix = PurePosixPath((file_name or "").lower()).suffix
        if base_type in _PDF_TYPES or suffix == ".pdf":
            return "pdf"
        if base_type in _DOCX_TYPES or suffix == ".docx":
            return "docx"
        return "text"

    def _extract_pdf(self, data: bytes, file_name: str) -> str:
        try:
            reader = PdfReader(io.BytesIO(data))
            parts = []
            for page in reader.pages:
                text = page.extract_text()
                if text and text.strip():
                    parts.append(text.strip())
        except Exception as exc:
            raise ExtractionError(f"Failed to extract text from PDF {file_name}: {exc}") from exc
        return "\n\n".join(parts)

    def _extract_docx(self, data: bytes, file_name: str) -> str:
        try:
            doc = DocxDocument(io.BytesIO(data))
        except Exception as exc:
            raise ExtractionError(f"Failed to open DOCX {file_name}: {exc}") from exc

        parts = []
        for para in doc.paragraphs:
            text = para.text.strip()
            if text:
                parts.append(text)

        for table in doc.tables:
            for row in table.rows:
                cells = [cell.text.strip() for cell in row.cells if cell.text.strip()]
                if cells:
                    parts.append(" | ".join(cells))

        return "\n\n".join(parts)
