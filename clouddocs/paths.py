import logging
import re
import unicodedata
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger("clouddocs.paths")

PathLike = Union[str, Path]

_UNSAFE_SEGMENT_CHARS = re.compile(r"[^a-zA-Z0-9_.-]")
_UNSAFE_SLUG_RUNS = re.compile(r"[^a-z0-9-]+")
_DASH_RUNS = re.compile(r"-+")

SLUG_FALLBACK = "unknown"
DIR_NAME_FALLBACK = "folder"
MAX_DIR_NAME_LENGTH = 50

# Device names Windows refuses as file or directory names.
RESERVED_DIR_NAMES = {
    "con",
    "prn",
    "aux",
    "nul",
    *(f"com{index}" for index in range(1, 10)),
    *(f"lpt{index}" for index in range(1, 10)),
}


class PathTraversal(Exception):
    """Raised when a candidate path resolves outside of its base directory."""


class FileNotFound(Exception):
    """Raised when no stored file exists for a logical reference."""


def sanitize_segment(raw: Optional[str]) -> str:
    """Map a single untrusted path segment to ``[a-zA-Z0-9_.-]`` characters."""

    return _UNSAFE_SEGMENT_CHARS.sub("-", raw or "")


def sanitize_relative_path(logical_path: Optional[str]) -> str:
    """Sanitize each ``/``-separated level of *logical_path* independently.

    One leading slash is stripped and empty segments are dropped, so
    ``"/Acme Corp//reports/q1.pdf"`` becomes ``"Acme-Corp/reports/q1.pdf"``.
    Segments that sanitize to nothing but dashes are kept so the number of
    levels never changes.
    """

    relative = strip_leading_slash(logical_path or "")
    segments = [segment for segment in relative.split("/") if segment]
    return "/".join(sanitize_segment(segment) for segment in segments)


def strip_leading_slash(value: str) -> str:
    if value.startswith("/"):
        return value[1:]
    return value


def sanitize_dir_name(name: Optional[str]) -> str:
    """Return the directory-name form of a folder's display name."""

    normalized = unicodedata.normalize("NFKD", str(name or ""))
    without_marks = "".join(
        char for char in normalized if not unicodedata.combining(char)
    )
    safe = sanitize_segment(without_marks.strip().lower())
    safe = _DASH_RUNS.sub("-", safe).strip(".-")

    if not safe or safe in RESERVED_DIR_NAMES:
        return DIR_NAME_FALLBACK

    # Truncation can expose a trailing separator again.
    return safe[:MAX_DIR_NAME_LENGTH].rstrip(".-") or DIR_NAME_FALLBACK


def derive_slug(raw_name: object) -> str:
    """Convert an organization name or slug into a storage namespace segment.

    Never raises: empty input yields ``"unknown"`` so download handlers always
    get a usable namespace.
    """

    text = "" if raw_name is None else str(raw_name)
    slug = _UNSAFE_SLUG_RUNS.sub("-", text.lower()).strip("-")
    return slug or SLUG_FALLBACK


def _resolve(path: PathLike) -> Path:
    return Path(path).expanduser().resolve()


def is_path_within_base(candidate: PathLike, base: PathLike) -> bool:
    """Return ``True`` when *candidate* is *base* or lies beneath it.

    Both sides are compared after symlink resolution.
    """

    if "\x00" in str(candidate) or "\x00" in str(base):
        return False
    try:
        resolved_candidate = _resolve(candidate)
        resolved_base = _resolve(base)
    except (OSError, RuntimeError, ValueError):
        return False

    return (
        resolved_candidate == resolved_base
        or resolved_base in resolved_candidate.parents
    )


def validate_download_path(
    candidate_relative: str,
    base_dir: PathLike,
    *,
    allow_directory: bool = False,
) -> Path:
    """Resolve *candidate_relative* under *base_dir* and verify it exists.

    Raises:
        PathTraversal: The candidate escapes the base directory.
        FileNotFound: The base or the candidate does not exist, or the
            candidate is a directory and ``allow_directory`` is false.
    """

    base_path = Path(base_dir)
    if not base_path.is_dir():
        logger.warning("path_base_missing base=%s", base_path)
        raise FileNotFound("Storage location unavailable")

    if "\x00" in (candidate_relative or ""):
        logger.warning(
            "path_traversal_rejected reason=null_byte base=%s", base_path
        )
        raise PathTraversal("Invalid path")

    joined = base_path / (candidate_relative or "")
    if not is_path_within_base(joined, base_path):
        logger.warning(
            "path_traversal_rejected base=%s candidate=%r",
            base_path,
            candidate_relative,
        )
        raise PathTraversal("Invalid path")

    resolved = joined.resolve()
    if resolved.is_file() or (allow_directory and resolved.is_dir()):
        return resolved

    logger.debug("path_candidate_missing resolved=%s", resolved)
    raise FileNotFound("File not found")
