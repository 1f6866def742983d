import os
from pathlib import Path

import pytest

from kbsync.service.fs import (
    PathTraversalError,
    is_safe_owner_id,
    safe_join,
    sanitize_file_name,
)


def test_safe_join_accepts_child_path(tmp_path: Path):
    base = tmp_path
    result = safe_join(base, "nested/file.txt")

    assert base.resolve() in result.parents


def test_safe_join_rejects_traversal(tmp_path: Path):
    base = tmp_path

    with pytest.raises(PathTraversalError):
        safe_join(base, os.path.join("..", "escape.txt"))


def test_safe_join_rejects_absolute(tmp_path: Path):
    base = tmp_path

    with pytest.raises(PathTraversalError):
        safe_join(base, str(Path("/tmp/absolute.txt")))


def test_sanitize_file_name_keeps_leaf_only():
    assert sanitize_file_name("../../etc/passwd") == "passwd"
    assert sanitize_file_name("dir\\sub\\notes.txt") == "notes.txt"


def test_sanitize_file_name_replaces_unsafe_characters():
    assert sanitize_file_name("report (final)?.pdf") == "report _final__.pdf"


@pytest.mark.parametrize("raw", ["", "   ", ".", "..", "a/.."])
def test_sanitize_file_name_falls_back_for_empty_segments(raw):
    assert sanitize_file_name(raw) == "file"


@pytest.mark.parametrize("owner_id", ["u1", "user@example.com", "0f8e-uuid", "alice.smith"])
def test_single_segment_owner_ids_accepted(owner_id):
    assert is_safe_owner_id(owner_id)


@pytest.mark.parametrize("owner_id", ["", "alice/bob", "a\\b", ".", "..", ".meta", "trail ", "tab\there"])
def test_nesting_owner_ids_refused(owner_id):
    assert not is_safe_owner_id(owner_id)
