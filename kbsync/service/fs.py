import re
from pathlib import Path


class PathTraversalError(ValueError):
    """Raised when a path escapes the intended base directory."""


_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._\- ]")


def safe_join(base: Path, relative: str) -> Path:
    """Join ``relative`` to ``base`` while preventing path traversal.

    The resulting path must resolve within ``base``; absolute paths or ``..``
    segments that would escape the base directory raise ``PathTraversalError``.
    """

    base_resolved = base.resolve()
    rel_path = Path(relative)
    if rel_path.is_absolute():
        raise PathTraversalError("absolute paths not allowed")

    candidate = (base_resolved / rel_path).resolve()
    if candidate == base_resolved or base_resolved in candidate.parents:
        return candidate

    raise PathTraversalError("path traversal detected")


def sanitize_file_name(name: str) -> str:
    """Reduce a display name to a single safe path segment."""
    leaf = name.replace("\\", "/").rsplit("/", 1)[-1].strip()
    cleaned = _UNSAFE_NAME_CHARS.sub("_", leaf)
    if cleaned in {"", ".", ".."}:
        return "file"
    return cleaned


def is_safe_owner_id(owner_id: str) -> bool:
    """True when ``owner_id`` can stand alone as one archive key segment.

    Owner prefixes must never nest, so separators, a leading dot and control
    characters are refused.
    """
    if not owner_id or owner_id != owner_id.strip():
        return False
    if owner_id.startswith(".") or "/" in owner_id or "\\" in owner_id:
        return False
    return all(ch.isprintable() for ch in owner_id)
