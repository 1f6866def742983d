import base64
from pathlib import Path

import pytest

from kbsync.service.diff import (
    ConfigurationDiff,
    DeleteAll,
    DeleteSpecific,
    DiffApplier,
    FileInput,
    RuleInput,
)
from kbsync.service.errors import DuplicateNameError, ValidationError
from kbsync.service.validation import (
    UpdateLimits,
    UpdateValidator,
    decode_file_content,
    validate_file_type,
)
from kbsync.storage.memory import MemoryStore

MIB = 1024 * 1024


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _limits(**overrides) -> UpdateLimits:
    values = dict(
        storage_quota_bytes=10 * MIB,
        max_file_size_bytes=10 * MIB,
        max_rules_per_request=100,
        max_files_per_request=50,
        max_rule_chars=10000,
    )
    values.update(overrides)
    return UpdateLimits(**values)


@pytest.fixture
def store(tmp_path: Path) -> MemoryStore:
    return MemoryStore(state_root=str(tmp_path))


class TestFileType:
    @pytest.mark.parametrize(
        "name,content_type",
        [
            ("notes.txt", "text/plain"),
            ("notes.TXT", "text/plain; charset=utf-8"),
            ("doc.pdf", "application/pdf"),
            ("doc.docx", "application/vnd.openxmlformats-officedocument.wordprocessingml.document"),
            ("old.doc", "application/msword"),
            ("rich.rtf", "application/rtf"),
        ],
    )
    def test_allowed_types(self, name, content_type):
        assert validate_file_type(name, content_type, 10, max_size=100) is None

    def test_rejects_unknown_extension(self):
        assert "not allowed" in validate_file_type("run.exe", "text/plain", 1, max_size=100)

    def test_rejects_unknown_content_type(self):
        assert "not allowed" in validate_file_type("a.txt", "image/png", 1, max_size=100)

    def test_rejects_oversize_and_missing_fields(self):
        assert validate_file_type("a.txt", "text/plain", 101, max_size=100) is not None
        assert validate_file_type("", "text/plain", 1, max_size=100) is not None
        assert validate_file_type("a.txt", " ", 1, max_size=100) is not None


class TestDecode:
    def test_plain_and_data_url(self):
        assert decode_file_content(_b64(b"hello")) == b"hello"
        assert decode_file_content("data:text/plain;base64," + _b64(b"hello")) == b"hello"

    @pytest.mark.parametrize("raw", ["", "   ", "not base64!!"])
    def test_invalid_content(self, raw):
        with pytest.raises(ValidationError):
            decode_file_content(raw)


class TestUpdateValidator:
    def test_returns_decoded_blobs_and_sizes(self, store):
        diff = ConfigurationDiff(
            files_to_add=[FileInput("a.txt", "text/plain", _b64(b"abc"), size=3)]
        )

        validated = UpdateValidator(store, _limits()).validate("owner-a", diff)

        assert validated.blobs == [b"abc"]
        assert validated.file_sizes == [3]
        assert validated.resulting_bytes == 3

    def test_declared_size_must_match(self, store):
        diff = ConfigurationDiff(
            files_to_add=[FileInput("a.txt", "text/plain", _b64(b"abc"), size=4)]
        )

        with pytest.raises(ValidationError, match="declared size"):
            UpdateValidator(store, _limits()).validate("owner-a", diff)

    def test_blank_rule_rejected(self, store):
        diff = ConfigurationDiff(rules_to_add=[RuleInput("   ")])

        with pytest.raises(ValidationError):
            UpdateValidator(store, _limits()).validate("owner-a", diff)

    def test_rule_length_limit(self, store):
        diff = ConfigurationDiff(rules_to_add=[RuleInput("x" * 11)])

        with pytest.raises(ValidationError):
            UpdateValidator(store, _limits(max_rule_chars=10)).validate("owner-a", diff)

    def test_request_count_limits(self, store):
        validator = UpdateValidator(store, _limits(max_rules_per_request=2, max_files_per_request=1))

        with pytest.raises(ValidationError):
            validator.validate("owner-a", ConfigurationDiff(rules_to_add=[RuleInput("r")] * 3))
        with pytest.raises(ValidationError):
            validator.validate(
                "owner-a", ConfigurationDiff(rules_to_delete=DeleteSpecific(("a", "b", "c")))
            )

    def test_duplicate_name_against_owned_files(self, store):
        DiffApplier(store).apply(
            "owner-a",
            ConfigurationDiff(files_to_add=[FileInput("a.txt", "text/plain", _b64(b"abc"), size=3)]),
        )
        diff = ConfigurationDiff(
            files_to_add=[FileInput("a.txt", "text/plain", _b64(b"xyz"), size=3)]
        )

        with pytest.raises(DuplicateNameError):
            UpdateValidator(store, _limits()).validate("owner-a", diff)

    def test_name_freed_by_delete_in_same_request(self, store):
        DiffApplier(store).apply(
            "owner-a",
            ConfigurationDiff(files_to_add=[FileInput("a.txt", "text/plain", _b64(b"abc"), size=3)]),
        )
        diff = ConfigurationDiff(
            files_to_delete=DeleteAll(),
            files_to_add=[FileInput("a.txt", "text/plain", _b64(b"xyz"), size=3)],
        )

        validated = UpdateValidator(store, _limits()).validate("owner-a", diff)
        assert [f.name for f in validated.files_to_delete] == ["a.txt"]

    def test_duplicate_name_within_request(self, store):
        item = FileInput("a.txt", "text/plain", _b64(b"abc"), size=3)
        diff = ConfigurationDiff(files_to_add=[item, item])

        with pytest.raises(DuplicateNameError):
            UpdateValidator(store, _limits()).validate("owner-a", diff)

    def test_quota_counts_existing_bytes(self, store):
        DiffApplier(store).apply(
            "owner-a",
            ConfigurationDiff(
                files_to_add=[FileInput("a.txt", "text/plain", _b64(b"x" * 60), size=60)]
            ),
        )
        diff = ConfigurationDiff(
            files_to_add=[FileInput("b.txt", "text/plain", _b64(b"y" * 50), size=50)]
        )

        with pytest.raises(ValidationError, match="quota"):
            UpdateValidator(store, _limits(storage_quota_bytes=100)).validate("owner-a", diff)

    def test_quota_credits_deleted_rows(self, store):
        DiffApplier(store).apply(
            "owner-a",
            ConfigurationDiff(
                files_to_add=[FileInput("a.txt", "text/plain", _b64(b"x" * 60), size=60)]
            ),
        )
        diff = ConfigurationDiff(
            files_to_delete=DeleteAll(),
            files_to_add=[FileInput("b.txt", "text/plain", _b64(b"y" * 50), size=50)],
        )

        validated = UpdateValidator(store, _limits(storage_quota_bytes=100)).validate("owner-a", diff)
        assert validated.resulting_bytes == 50
