import logging
import os
import shutil
import sqlite3
import time
import uuid
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO, Dict, Generator, Iterable, List, Optional, Tuple

from werkzeug.utils import secure_filename

from .config import StorageConfig
from .layout import DocumentRef, LayoutResolver, OrganizationRef
from .paths import (
    FileNotFound,
    derive_slug,
    is_path_within_base,
    sanitize_dir_name,
    sanitize_relative_path,
    sanitize_segment,
)

CHUNK_SIZE_BYTES = 1024 * 1024  # 1 MB chunks for streaming
SECONDS_PER_DAY = 24 * 60 * 60

logger = logging.getLogger("clouddocs.storage")


class DirectoryOperationFailed(RuntimeError):
    """Raised when the filesystem refuses a folder directory operation."""

    def __init__(self, operation: str, error: OSError) -> None:
        super().__init__(f"Directory operation failed: {operation}")
        self.operation = operation
        self.os_error = error


class FolderNameConflict(ValueError):
    """Raised when an owner already has a folder with the requested name."""


class DocumentAlreadyTrashed(ValueError):
    """Raised when trashing a document that is already in the trash."""


class DocumentNotTrashed(ValueError):
    """Raised when restoring a document that is not in the trash."""


class FolderStorage:
    """Physical directories backing organizations, users and folders.

    Folder directories live at ``<storage_root>/<owner>/<name>-<folder_id>``.
    The id suffix keeps the directory unique when two names sanitize alike and
    lets deletion find the directory without knowing the current name.
    """

    def __init__(self, config: StorageConfig) -> None:
        self.config = config

    def _owner_dir(self, owner_id: str) -> Path:
        return self.config.storage_root / sanitize_segment(str(owner_id))

    def folder_dir_name(self, folder_name: str, folder_id: str) -> str:
        return f"{sanitize_dir_name(folder_name)}-{sanitize_segment(str(folder_id))}"

    def ensure_organization_directory(self, slug_source: str) -> Path:
        directory = self.config.storage_root / derive_slug(slug_source)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            self._fail("ensure_organization_directory", error)
        return directory

    def migrate_organization_directory(self, old_slug: str, new_slug: str) -> bool:
        """Move ``<root>/<old_slug>`` to ``<root>/<new_slug>``.

        Returns ``True`` only when a directory was moved. An existing target is
        left untouched and both directories stay in place.
        """

        old_dir = self.config.storage_root / derive_slug(old_slug)
        new_dir = self.config.storage_root / derive_slug(new_slug)
        if old_dir == new_dir or not old_dir.is_dir():
            return False
        if new_dir.exists():
            logger.warning(
                "organization_directory_conflict old=%s new=%s",
                old_dir.name,
                new_dir.name,
            )
            return False
        try:
            os.replace(old_dir, new_dir)
        except OSError as error:
            self._fail("migrate_organization_directory", error)
        logger.info(
            "organization_directory_migrated old=%s new=%s", old_dir.name, new_dir.name
        )
        return True

    def ensure_user_directory(self, owner_id: str) -> Path:
        directory = self._owner_dir(owner_id)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            self._fail("ensure_user_directory", error)
        return directory

    def create_folder_directory(
        self, owner_id: str, folder_name: str, folder_id: str
    ) -> Path:
        directory = self._owner_dir(owner_id) / self.folder_dir_name(
            folder_name, folder_id
        )
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as error:
            self._fail("create_folder_directory", error)
        logger.info(
            "folder_directory_created owner=%s folder_id=%s directory=%s",
            owner_id,
            folder_id,
            directory.name,
        )
        return directory

    def rename_folder_directory(
        self, owner_id: str, folder_id: str, old_name: str, new_name: str
    ) -> Path:
        owner_dir = self._owner_dir(owner_id)
        old_dir = owner_dir / self.folder_dir_name(old_name, folder_id)
        new_dir = owner_dir / self.folder_dir_name(new_name, folder_id)

        if old_dir == new_dir:
            return new_dir

        try:
            owner_dir.mkdir(parents=True, exist_ok=True)
            if old_dir.is_dir():
                os.replace(old_dir, new_dir)
                logger.info(
                    "folder_directory_renamed owner=%s folder_id=%s old=%s new=%s",
                    owner_id,
                    folder_id,
                    old_dir.name,
                    new_dir.name,
                )
            elif not new_dir.exists():
                new_dir.mkdir(parents=True)
                logger.warning(
                    "folder_directory_recreated owner=%s folder_id=%s missing=%s new=%s",
                    owner_id,
                    folder_id,
                    old_dir.name,
                    new_dir.name,
                )
        except OSError as error:
            self._fail("rename_folder_directory", error)
        return new_dir

    def delete_folder_directory(self, owner_id: str, folder_id: str) -> int:
        removed = 0
        try:
            for directory in self._iter_folder_dirs(owner_id, folder_id):
                shutil.rmtree(directory)
                removed += 1
        except OSError as error:
            self._fail("delete_folder_directory", error)

        logger.info(
            "folder_directory_deleted owner=%s folder_id=%s removed=%d",
            owner_id,
            folder_id,
            removed,
        )
        return removed

    def folder_directory(self, owner_id: str, folder_id: str) -> Optional[Path]:
        for directory in self._iter_folder_dirs(owner_id, folder_id):
            return directory
        return None

    def _iter_folder_dirs(self, owner_id: str, folder_id: str) -> Iterable[Path]:
        owner_dir = self._owner_dir(owner_id)
        if not owner_dir.is_dir():
            return []
        suffix = f"-{sanitize_segment(str(folder_id))}"
        return sorted(
            entry
            for entry in owner_dir.iterdir()
            if entry.is_dir() and entry.name.endswith(suffix)
        )

    def _fail(self, operation: str, error: OSError) -> None:
        logger.error(
            "directory_operation_failed operation=%s errno=%s error=%s",
            operation,
            error.errno,
            error.strerror or error,
        )
        raise DirectoryOperationFailed(operation, error) from error


def prune_empty_dirs(path: Path, root: Path) -> None:
    """Remove empty directories from *path* upwards.

    Stops at the first non-empty directory and never removes *root* or its
    direct children (organization and owner namespaces).
    """

    try:
        current = path.resolve()
        root = root.resolve()
    except FileNotFoundError:
        return

    while root in current.parents and current.parent != root:
        try:
            current.rmdir()
        except OSError:
            break
        current = current.parent


def _stored_filename(original_name: str) -> str:
    safe = secure_filename(original_name or "") or f"file-{uuid.uuid4().hex}"
    return f"{uuid.uuid4().hex[:8]}-{safe}"


def store_document_file(
    stream: BinaryIO,
    *,
    organization_slug: str,
    folder_path: Optional[str],
    original_name: str,
    config: StorageConfig,
) -> Tuple[str, Path, int]:
    """Write an upload under the current layout.

    Returns the logical path to record on the document, the physical path
    written and the number of bytes stored.
    """

    folder = sanitize_relative_path(folder_path)
    # Logical paths never carry the organization slug.
    slug = derive_slug(organization_slug)
    if folder == slug:
        folder = ""
    elif folder.startswith(slug + "/"):
        folder = folder[len(slug) + 1 :]
    stored_name = _stored_filename(original_name)
    logical_path = f"/{folder}/{stored_name}" if folder else f"/{stored_name}"

    resolver = LayoutResolver(config)
    destination = resolver.current_location(
        DocumentRef(logical_path, stored_name), OrganizationRef(organization_slug)
    )
    if not is_path_within_base(destination, config.storage_root):
        # Unreachable with sanitized segments unless the root itself moved.
        raise FileNotFound("Storage location unavailable")

    destination.parent.mkdir(parents=True, exist_ok=True)
    temp_path = destination.with_suffix(destination.suffix + ".tmp")
    size = 0
    try:
        with temp_path.open("wb") as handle:
            while True:
                chunk = stream.read(CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                size += len(chunk)
                handle.write(chunk)
        temp_path.replace(destination)
    finally:
        if temp_path.exists():
            temp_path.unlink()

    logger.info(
        "document_file_stored slug=%s logical_path=%s size=%d",
        slug,
        logical_path,
        size,
    )
    return logical_path, destination, size


def remove_document_file(
    doc: DocumentRef, org: OrganizationRef, config: StorageConfig
) -> bool:
    """Delete the file backing *doc*; ``False`` when nothing was found."""

    try:
        file_path = LayoutResolver(config).resolve(doc, org)
    except FileNotFound:
        return False

    file_path.unlink()
    for root in (config.storage_root, config.legacy_uploads_root):
        if is_path_within_base(file_path, root):
            prune_empty_dirs(file_path.parent, root)
            break
    logger.info("document_file_removed document_path=%r", doc.path)
    return True


@contextmanager
def get_db(config: StorageConfig) -> Generator[sqlite3.Connection, None, None]:
    config.data_dir.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(config.db_path, timeout=30.0)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.execute("PRAGMA foreign_keys=ON")
    conn.row_factory = sqlite3.Row
    try:
        yield conn
        if conn.in_transaction:
            conn.commit()
    except Exception:
        if conn.in_transaction:
            conn.rollback()
        raise
    finally:
        conn.close()


def init_db(config: StorageConfig) -> None:
    with get_db(config) as conn:
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS organizations (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                slug TEXT NOT NULL,
                created_at REAL NOT NULL
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS folders (
                id TEXT PRIMARY KEY,
                owner TEXT NOT NULL,
                name TEXT NOT NULL,
                created_at REAL NOT NULL,
                UNIQUE (owner, name)
            )
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                filename TEXT NOT NULL,
                original_name TEXT NOT NULL,
                path TEXT NOT NULL,
                organization TEXT NOT NULL REFERENCES organizations(id),
                folder TEXT REFERENCES folders(id) ON DELETE SET NULL,
                uploaded_by TEXT,
                size INTEGER NOT NULL DEFAULT 0,
                mime_type TEXT,
                uploaded_at REAL NOT NULL,
                is_deleted INTEGER NOT NULL DEFAULT 0,
                deleted_at REAL,
                deleted_by TEXT,
                deletion_reason TEXT,
                scheduled_deletion_date REAL
            )
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_documents_purge "
            "ON documents(is_deleted, scheduled_deletion_date)"
        )
        conn.commit()


def create_organization(config: StorageConfig, name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError("Organization name cannot be empty")

    organization_id = uuid.uuid4().hex
    with get_db(config) as conn:
        conn.execute(
            "INSERT INTO organizations (id, name, slug, created_at) VALUES (?, ?, ?, ?)",
            (organization_id, name, derive_slug(name), time.time()),
        )
    logger.info(
        "organization_created organization_id=%s slug=%s",
        organization_id,
        derive_slug(name),
    )
    return organization_id


def get_organization(config: StorageConfig, organization_id: str) -> Optional[sqlite3.Row]:
    with get_db(config) as conn:
        return conn.execute(
            "SELECT * FROM organizations WHERE id = ?", (organization_id,)
        ).fetchone()


def rename_organization(config: StorageConfig, organization_id: str, new_name: str) -> bool:
    """Rename an organization, recompute its slug and move its directory.

    The directory is moved before the record is updated; if the update fails
    the move is undone so the record and the directory keep the same slug.
    """

    new_name = (new_name or "").strip()
    if not new_name:
        raise ValueError("Organization name cannot be empty")

    previous = get_organization(config, organization_id)
    if previous is None:
        return False

    folders = FolderStorage(config)
    old_slug = derive_slug(previous["slug"])
    new_slug = derive_slug(new_name)
    moved = folders.migrate_organization_directory(old_slug, new_slug)
    try:
        with get_db(config) as conn:
            conn.execute(
                "UPDATE organizations SET name = ?, slug = ? WHERE id = ?",
                (new_name, new_slug, organization_id),
            )
    except sqlite3.Error:
        if moved:
            folders.migrate_organization_directory(new_slug, old_slug)
        raise

    logger.info(
        "organization_renamed organization_id=%s old_slug=%s new_slug=%s directory_moved=%s",
        organization_id,
        old_slug,
        new_slug,
        moved,
    )
    return True


def create_folder(config: StorageConfig, owner: str, name: str) -> str:
    name = (name or "").strip()
    if not name:
        raise ValueError("Folder name is required")
    if not owner:
        raise ValueError("Owner is required")

    folder_id = uuid.uuid4().hex
    try:
        with get_db(config) as conn:
            conn.execute(
                "INSERT INTO folders (id, owner, name, created_at) VALUES (?, ?, ?, ?)",
                (folder_id, owner, name, time.time()),
            )
    except sqlite3.IntegrityError as error:
        raise FolderNameConflict("Folder name already exists for this user") from error
    return folder_id


def get_folder(config: StorageConfig, folder_id: str) -> Optional[sqlite3.Row]:
    with get_db(config) as conn:
        return conn.execute("SELECT * FROM folders WHERE id = ?", (folder_id,)).fetchone()


def rename_folder(config: StorageConfig, folder_id: str, name: str) -> None:
    name = (name or "").strip()
    if not name:
        raise ValueError("Folder name is required")
    try:
        with get_db(config) as conn:
            conn.execute("UPDATE folders SET name = ? WHERE id = ?", (name, folder_id))
    except sqlite3.IntegrityError as error:
        raise FolderNameConflict("Folder name already exists for this user") from error


def delete_folder_record(config: StorageConfig, folder_id: str) -> bool:
    with get_db(config) as conn:
        cursor = conn.execute("DELETE FROM folders WHERE id = ?", (folder_id,))
        return cursor.rowcount > 0


def count_folder_documents(config: StorageConfig, folder_id: str) -> int:
    with get_db(config) as conn:
        row = conn.execute(
            "SELECT COUNT(*) AS count FROM documents WHERE folder = ?", (folder_id,)
        ).fetchone()
        return int(row["count"] if row and row["count"] is not None else 0)


def list_folder_document_ids(config: StorageConfig, folder_id: str) -> List[str]:
    with get_db(config) as conn:
        return [
            row["id"]
            for row in conn.execute(
                "SELECT id FROM documents WHERE folder = ?", (folder_id,)
            )
        ]


def register_document(
    config: StorageConfig,
    *,
    filename: str,
    original_name: str,
    path: str,
    organization: str,
    folder: Optional[str] = None,
    uploaded_by: Optional[str] = None,
    size: int = 0,
    mime_type: Optional[str] = None,
) -> str:
    document_id = uuid.uuid4().hex
    with get_db(config) as conn:
        conn.execute(
            """
            INSERT INTO documents (
                id, filename, original_name, path, organization, folder,
                uploaded_by, size, mime_type, uploaded_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                document_id,
                filename,
                original_name,
                path,
                organization,
                folder,
                uploaded_by,
                size,
                mime_type,
                time.time(),
            ),
        )
    logger.info(
        "document_registered document_id=%s organization=%s path=%s size=%d",
        document_id,
        organization,
        path,
        size,
    )
    return document_id


def get_document(config: StorageConfig, document_id: str) -> Optional[sqlite3.Row]:
    with get_db(config) as conn:
        return conn.execute(
            "SELECT * FROM documents WHERE id = ?", (document_id,)
        ).fetchone()


def document_refs(
    config: StorageConfig, record: sqlite3.Row
) -> Tuple[DocumentRef, OrganizationRef]:
    """Build the narrow resolver inputs for a document row."""

    organization = get_organization(config, record["organization"])
    slug = organization["slug"] if organization is not None else ""
    return DocumentRef(record["path"], record["filename"]), OrganizationRef(slug)


def trash_document(
    config: StorageConfig,
    document_id: str,
    deleted_by: Optional[str],
    reason: Optional[str] = None,
) -> sqlite3.Row:
    record = get_document(config, document_id)
    if record is None:
        raise FileNotFound("Document not found")
    if record["is_deleted"]:
        raise DocumentAlreadyTrashed("Document is already in trash")

    now = time.time()
    scheduled = now + config.trash_retention_days * SECONDS_PER_DAY
    with get_db(config) as conn:
        conn.execute(
            """
            UPDATE documents
            SET is_deleted = 1, deleted_at = ?, deleted_by = ?,
                deletion_reason = ?, scheduled_deletion_date = ?
            WHERE id = ?
            """,
            (now, deleted_by, reason, scheduled, document_id),
        )
    logger.info(
        "document_trashed document_id=%s deleted_by=%s scheduled_deletion_date=%f",
        document_id,
        deleted_by,
        scheduled,
    )
    return get_document(config, document_id)


def restore_document(config: StorageConfig, document_id: str) -> sqlite3.Row:
    record = get_document(config, document_id)
    if record is None:
        raise FileNotFound("Document not found")
    if not record["is_deleted"]:
        raise DocumentNotTrashed("Document is not in trash")

    with get_db(config) as conn:
        conn.execute(
            """
            UPDATE documents
            SET is_deleted = 0, deleted_at = NULL, deleted_by = NULL,
                deletion_reason = NULL, scheduled_deletion_date = NULL
            WHERE id = ?
            """,
            (document_id,),
        )
    logger.info("document_restored document_id=%s", document_id)
    return get_document(config, document_id)


def list_trashed_documents(config: StorageConfig) -> List[sqlite3.Row]:
    with get_db(config) as conn:
        return conn.execute(
            "SELECT * FROM documents WHERE is_deleted = 1 "
            "ORDER BY scheduled_deletion_date ASC"
        ).fetchall()


def purge_document(config: StorageConfig, document_id: str) -> bool:
    """Permanently delete a document's file and record."""

    record = get_document(config, document_id)
    if record is None:
        return False

    doc, org = document_refs(config, record)
    if not remove_document_file(doc, org, config):
        logger.warning(
            "document_purge_file_missing document_id=%s path=%r",
            document_id,
            record["path"],
        )

    with get_db(config) as conn:
        conn.execute("DELETE FROM documents WHERE id = ?", (document_id,))
    logger.info("document_purged document_id=%s", document_id)
    return True


def purge_expired_documents(config: StorageConfig) -> int:
    now = time.time()
    with get_db(config) as conn:
        expired = conn.execute(
            "SELECT id FROM documents WHERE is_deleted = 1 AND scheduled_deletion_date <= ?",
            (now,),
        ).fetchall()

    removed = 0
    for row in expired:
        try:
            if purge_document(config, row["id"]):
                removed += 1
        except OSError as error:
            logger.warning(
                "document_purge_failed document_id=%s error=%s", row["id"], error
            )

    if removed:
        logger.info("purge_completed removed=%d", removed)
    return removed


def find_file_recursively(root: Path, filename: str) -> Optional[Path]:
    """Return the first file named *filename* below *root*."""

    if not filename or not root.is_dir():
        return None
    for candidate in sorted(root.rglob("*")):
        if candidate.name == filename and candidate.is_file():
            return candidate
    return None


def storage_summary(config: StorageConfig) -> Dict[str, int]:
    with get_db(config) as conn:
        row = conn.execute(
            """
            SELECT
                COUNT(*) AS total,
                COALESCE(SUM(CASE WHEN is_deleted = 1 THEN 1 ELSE 0 END), 0) AS trashed,
                COALESCE(SUM(size), 0) AS total_bytes
            FROM documents
            """
        ).fetchone()
    return {
        "documents": int(row["total"] or 0),
        "trashed": int(row["trashed"] or 0),
        "total_bytes": int(row["total_bytes"] or 0),
    }
