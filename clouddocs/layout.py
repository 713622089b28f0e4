"""Map a document's logical path to the file that backs it on disk.

The physical layout changed over time (flat uploads, then slug-namespaced
storage, then sanitized segments). Files written under each convention stay
reachable by trying one candidate location per convention, in a fixed order.
"""

import logging
from pathlib import Path
from typing import Dict, List, NamedTuple, Optional

from .config import StorageConfig
from .paths import (
    FileNotFound,
    PathTraversal,
    derive_slug,
    sanitize_relative_path,
    strip_leading_slash,
    validate_download_path,
)

logger = logging.getLogger("clouddocs.layout")

CURRENT_LAYOUT = "current"
LEGACY_FLAT_LAYOUT = "legacy-flat"
LEGACY_DOUBLE_NESTED_LAYOUT = "legacy-double-nested"

# Prefix produced by an old upload bug that nested files one level too deep.
DOUBLE_NESTED_PREFIX = "obs/"


class DocumentRef(NamedTuple):
    path: str
    filename: str = ""


class OrganizationRef(NamedTuple):
    slug: str


class PathCandidate(NamedTuple):
    base_dir: Path
    relative_path: str
    label: str

    @property
    def location(self) -> Path:
        """Unvalidated join of base and relative path."""
        return self.base_dir / self.relative_path


class LayoutResolver:
    def __init__(self, config: StorageConfig) -> None:
        self.config = config

    def resolve_candidates(
        self, doc: DocumentRef, org: OrganizationRef
    ) -> List[PathCandidate]:
        """Return the locations to try for *doc*, newest layout first."""

        slug = derive_slug(org.slug)
        relative = strip_leading_slash(doc.path or "")
        sanitized = sanitize_relative_path(doc.path)

        if sanitized.startswith(slug + "/") or sanitized.startswith(slug + "\\"):
            current_relative = sanitized
        elif sanitized:
            current_relative = f"{slug}/{sanitized}"
        else:
            current_relative = slug

        return [
            PathCandidate(self.config.storage_root, current_relative, CURRENT_LAYOUT),
            PathCandidate(
                self.config.legacy_uploads_root, relative, LEGACY_FLAT_LAYOUT
            ),
            PathCandidate(
                self.config.legacy_uploads_root,
                DOUBLE_NESTED_PREFIX + relative,
                LEGACY_DOUBLE_NESTED_LAYOUT,
            ),
        ]

    def resolve(self, doc: DocumentRef, org: OrganizationRef) -> Path:
        """Return the first candidate that validates and exists.

        Raises:
            FileNotFound: No candidate exists inside its base directory.
        """

        for candidate in self.resolve_candidates(doc, org):
            try:
                resolved = validate_download_path(
                    candidate.relative_path, candidate.base_dir
                )
            except PathTraversal:
                logger.warning(
                    "layout_candidate_rejected layout=%s document_path=%r",
                    candidate.label,
                    doc.path,
                )
                continue
            except FileNotFound:
                continue

            if candidate.label != CURRENT_LAYOUT:
                logger.info(
                    "layout_legacy_hit layout=%s document_path=%r",
                    candidate.label,
                    doc.path,
                )
            return resolved

        logger.warning(
            "layout_unresolved document_path=%r slug=%s", doc.path, derive_slug(org.slug)
        )
        raise FileNotFound("File not found")

    def current_location(self, doc: DocumentRef, org: OrganizationRef) -> Path:
        """Absolute path new writes use for *doc*; not checked for existence."""

        return self.resolve_candidates(doc, org)[0].location

    def diagnose(
        self, doc: DocumentRef, org: OrganizationRef
    ) -> List[Dict[str, Optional[str]]]:
        report: List[Dict[str, Optional[str]]] = []
        for candidate in self.resolve_candidates(doc, org):
            entry: Dict[str, Optional[str]] = {
                "layout": candidate.label,
                "location": str(candidate.location),
                "resolved": None,
            }
            try:
                entry["resolved"] = str(
                    validate_download_path(candidate.relative_path, candidate.base_dir)
                )
                entry["status"] = "found"
            except PathTraversal:
                entry["status"] = "rejected"
            except FileNotFound:
                entry["status"] = "missing"
            report.append(entry)
        return report


def resolve_physical_path(
    doc: DocumentRef, org: OrganizationRef, config: StorageConfig
) -> Path:
    return LayoutResolver(config).resolve(doc, org)
