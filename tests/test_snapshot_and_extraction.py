import base64
import io
from datetime import datetime, timedelta

import pytest
from docx import Document

from kbsync.service.extraction import ExtractionError, TextExtractor
from kbsync.service.snapshot import SnapshotBuilder
from kbsync.storage.models import FileAsset, KnowledgeRule

DOCX_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"
T0 = datetime(2024, 1, 1)


def _docx_bytes() -> bytes:
    doc = Document()
    doc.add_paragraph("First paragraph")
    doc.add_paragraph("   ")
    table = doc.add_table(rows=1, cols=2)
    table.rows[0].cells[0].text = "left"
    table.rows[0].cells[1].text = "right"
    buffer = io.BytesIO()
    doc.save(buffer)
    return buffer.getvalue()


def _rule(rule_id: str, content: str, offset: int) -> KnowledgeRule:
    stamp = T0 + timedelta(seconds=offset)
    return KnowledgeRule(id=rule_id, owner_id="o", content=content, created_at=stamp, updated_at=stamp)


def _file(file_id: str, data: bytes, offset: int, name: str = "a.txt", content_type: str = "text/plain"):
    return FileAsset(
        id=file_id,
        owner_id="o",
        name=name,
        content_type=content_type,
        size=len(data),
        content=base64.b64encode(data).decode("ascii"),
        created_at=T0 + timedelta(seconds=offset),
    )


class TestTextExtractor:
    def test_plain_text_decoded_with_replacement(self):
        assert TextExtractor().extract("héllo".encode("utf-8"), "text/plain", "a.txt") == "héllo"
        assert TextExtractor().extract(b"\xffok", "text/plain", "a.txt") == "\ufffdok"

    def test_docx_paragraphs_and_tables(self):
        text = TextExtractor().extract(_docx_bytes(), DOCX_TYPE, "doc.docx")
        assert text == "First paragraph\n\nleft | right"

    def test_corrupt_docx_raises(self):
        with pytest.raises(ExtractionError):
            TextExtractor().extract(b"not a zip", DOCX_TYPE, "doc.docx")

    def test_corrupt_pdf_raises(self):
        with pytest.raises(ExtractionError):
            TextExtractor().extract(b"%PDF-garbage", "application/pdf", "doc.pdf")


class TestSnapshotBuilder:
    def test_single_rule_is_exact(self):
        builder = SnapshotBuilder(TextExtractor())
        assert builder.build([_rule("r1", "X", 0)], []) == "X"

    def test_rules_then_files_in_creation_order(self):
        builder = SnapshotBuilder(TextExtractor())
        rules = [_rule("r2", "second", 2), _rule("r1", "first", 1)]
        files = [_file("f2", b"file two", 2), _file("f1", b"file one", 1)]

        assert builder.build(rules, files) == "first\n\nsecond\n\nfile one\n\nfile two"

    def test_blank_parts_skipped(self):
        builder = SnapshotBuilder(TextExtractor())
        assert builder.build([_rule("r1", "  ", 0)], [_file("f1", b"\n", 0)]) == ""

    def test_unreadable_file_contributes_nothing(self):
        builder = SnapshotBuilder(TextExtractor())
        broken = _file("f1", b"not a zip", 0, name="doc.docx", content_type=DOCX_TYPE)

        assert builder.build([_rule("r1", "kept", 0)], [broken]) == "kept"
