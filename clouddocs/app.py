import atexit
import logging
import math
import mimetypes
import os
import re
import shutil
import time
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, Optional

import click
from apscheduler.schedulers.background import BackgroundScheduler
from flask import Flask, Response, abort, g, has_request_context, jsonify, request, send_file
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from werkzeug.exceptions import HTTPException

from .config import StorageConfig
from .layout import LayoutResolver
from .paths import FileNotFound, PathTraversal, derive_slug
from .storage import (
    SECONDS_PER_DAY,
    DirectoryOperationFailed,
    DocumentAlreadyTrashed,
    DocumentNotTrashed,
    FolderNameConflict,
    FolderStorage,
    count_folder_documents,
    create_folder,
    create_organization,
    delete_folder_record,
    document_refs,
    find_file_recursively,
    get_db,
    get_document,
    get_folder,
    get_organization,
    init_db,
    list_folder_document_ids,
    list_trashed_documents,
    purge_document,
    purge_expired_documents,
    register_document,
    rename_folder,
    rename_organization,
    restore_document,
    storage_summary,
    store_document_file,
    trash_document,
)

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024  # 5 MB max log file size
LOG_FILE_BACKUP_COUNT = 3  # Number of log file backups to keep
BYTES_PER_MB = 1024 * 1024

LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
numeric_level = getattr(logging, LOG_LEVEL, logging.INFO)
logging.basicConfig(
    level=numeric_level,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)

_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

CONFIG = StorageConfig.from_env()
CONFIG.ensure_directories()
init_db(CONFIG)

folder_storage = FolderStorage(CONFIG)
layout_resolver = LayoutResolver(CONFIG)


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        return _CONTROL_CHAR_PATTERN.sub("", value)
    return value


def _get_optional_bool_env(env_key: str) -> Optional[bool]:
    raw_value = os.environ.get(env_key)
    if raw_value is None:
        return None
    normalized = raw_value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return None


def _is_truthy(raw_value: Optional[str]) -> bool:
    return (raw_value or "").strip().lower() in {"1", "true", "yes", "on"}


class RequestAwareLogger:
    """Logger wrapper that injects request IDs into log messages."""

    def __init__(self, logger: logging.Logger) -> None:
        self._logger = logger

    def _with_request(self, message: str) -> str:
        if has_request_context():
            request_id = getattr(g, "request_id", None)
            if request_id:
                return f"request_id={request_id} {message}"
        return message

    def info(self, msg: str, *args, **kwargs) -> None:
        self._logger.info(self._with_request(msg), *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs) -> None:
        self._logger.warning(self._with_request(msg), *args, **kwargs)

    def error(self, msg: str, *args, **kwargs) -> None:
        self._logger.error(self._with_request(msg), *args, **kwargs)


def _configure_file_logging() -> Path:
    """Attach a rotating file handler for application and lifecycle logs."""

    log_path = CONFIG.logs_dir / "application.log"
    root_logger = logging.getLogger()
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s %(message)s")

    for handler in root_logger.handlers:
        if isinstance(handler, RotatingFileHandler) and getattr(handler, "baseFilename", "") == str(log_path):
            handler.setLevel(numeric_level)
            handler.setFormatter(formatter)
            return log_path

    file_handler = RotatingFileHandler(
        log_path,
        maxBytes=LOG_FILE_MAX_BYTES,
        backupCount=LOG_FILE_BACKUP_COUNT,
        encoding="utf-8",
    )
    file_handler.setLevel(numeric_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)
    return log_path


APP_LOG_PATH = _configure_file_logging()

_base_lifecycle_logger = logging.getLogger("clouddocs.lifecycle")
_base_lifecycle_logger.setLevel(numeric_level)
lifecycle_logger = RequestAwareLogger(_base_lifecycle_logger)

app = Flask(__name__)
app.config["MAX_CONTENT_LENGTH"] = CONFIG.max_upload_size_mb * BYTES_PER_MB
app.logger.setLevel(numeric_level)

limiter = Limiter(
    app=app,
    key_func=get_remote_address,
    default_limits=[],
    storage_uri=os.environ.get("CLOUDDOCS_RATE_LIMIT_STORAGE", "memory://"),
)


def download_rate_limit_string() -> str:
    return f"{CONFIG.download_rate_limit_per_minute} per minute"


scheduler: Optional[BackgroundScheduler] = None
if _get_optional_bool_env("CLOUDDOCS_SCHEDULER_ENABLED") is not False:
    scheduler = BackgroundScheduler(daemon=True)
    scheduler.add_job(
        func=purge_expired_documents,
        args=[CONFIG],
        trigger="interval",
        minutes=max(1, CONFIG.purge_interval_minutes),
        id="purge_expired_documents",
        name="Purge trashed documents past their deletion date",
        replace_existing=True,
    )
    scheduler.start()
    atexit.register(lambda: scheduler.shutdown(wait=False))


@app.before_request
def add_request_id() -> None:
    """Assign a request identifier for downstream logging."""

    g.request_id = request.headers.get("X-Request-ID", uuid.uuid4().hex)


@app.after_request
def log_request_completion(response: Response):
    """Emit lifecycle logs for every completed request."""

    lifecycle_logger.info(
        "request_completed method=%s path=%s status=%d",
        request.method,
        sanitize_log_value(request.path),
        response.status_code,
    )
    return response


@app.after_request
def add_request_id_header(response: Response):
    """Expose the current request identifier to clients."""

    if hasattr(g, "request_id"):
        response.headers["X-Request-ID"] = g.request_id
    response.headers["X-Content-Type-Options"] = "nosniff"
    return response


@app.errorhandler(FileNotFound)
@app.errorhandler(PathTraversal)
def handle_missing_file(error):
    # Traversal attempts look like any other missing document to the client.
    lifecycle_logger.warning(
        "document_file_unavailable reason=%s", type(error).__name__
    )
    return jsonify({"error": "Document not found"}), 404


@app.errorhandler(DirectoryOperationFailed)
def handle_directory_failure(error):
    lifecycle_logger.error(
        "directory_operation_failed operation=%s", error.operation
    )
    return jsonify({"error": "Storage operation failed"}), 500


@app.errorhandler(HTTPException)
def handle_http_error(error: HTTPException):
    return jsonify({"error": error.description or error.name}), error.code


def isoformat_utc(timestamp: Optional[float]) -> Optional[str]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).isoformat().replace(
        "+00:00", "Z"
    )


def _document_payload(record) -> Dict[str, Any]:
    payload = {
        "id": record["id"],
        "filename": record["filename"],
        "original_name": record["original_name"],
        "path": record["path"],
        "organization": record["organization"],
        "folder": record["folder"],
        "uploaded_by": record["uploaded_by"],
        "size": record["size"],
        "mime_type": record["mime_type"],
        "uploaded_at": isoformat_utc(record["uploaded_at"]),
        "is_deleted": bool(record["is_deleted"]),
    }
    if record["is_deleted"]:
        remaining = (record["scheduled_deletion_date"] or 0) - time.time()
        payload.update(
            {
                "deleted_at": isoformat_utc(record["deleted_at"]),
                "deleted_by": record["deleted_by"],
                "deletion_reason": record["deletion_reason"],
                "scheduled_deletion_date": isoformat_utc(
                    record["scheduled_deletion_date"]
                ),
                "days_remaining": max(0, math.ceil(remaining / SECONDS_PER_DAY)),
            }
        )
    return payload


def _folder_payload(record) -> Dict[str, Any]:
    return {
        "id": record["id"],
        "name": record["name"],
        "owner": record["owner"],
        "created_at": isoformat_utc(record["created_at"]),
    }


def _current_user() -> str:
    user_id = (request.headers.get("X-User-Id") or "").strip()
    if not user_id:
        abort(400, description="X-User-Id header is required")
    return user_id


def _json_body() -> Dict[str, Any]:
    data = request.get_json(silent=True)
    return data if isinstance(data, dict) else {}


def _active_document(document_id: str):
    record = get_document(CONFIG, document_id)
    if record is None or record["is_deleted"]:
        lifecycle_logger.warning(
            "document_unavailable document_id=%s", sanitize_log_value(document_id)
        )
        abort(404, description="Document not found")
    return record


def _owned_folder(folder_id: str, owner: str):
    record = get_folder(CONFIG, folder_id)
    if record is None:
        abort(404, description="Folder not found")
    if record["owner"] != owner:
        abort(403, description="Forbidden")
    return record


@app.route("/health")
def health_check():
    checks: Dict[str, Any] = {}
    healthy = True

    try:
        with get_db(CONFIG) as conn:
            conn.execute("SELECT COUNT(*) FROM documents").fetchone()
        checks["database"] = "ok"
    except Exception as error:
        checks["database"] = f"error: {str(error)[:100]}"
        healthy = False

    for key, root in (
        ("storage_writable", CONFIG.storage_root),
        ("legacy_uploads_writable", CONFIG.legacy_uploads_root),
    ):
        try:
            probe_file = root / f".health_check_{uuid.uuid4().hex}"
            probe_file.write_text("health_check", encoding="utf-8")
            probe_file.unlink(missing_ok=True)
            checks[key] = "ok"
        except OSError as error:
            checks[key] = f"error: {str(error)[:100]}"
            healthy = False

    try:
        usage = shutil.disk_usage(CONFIG.storage_root)
        checks["disk_space_gb"] = round(usage.free / (1024 ** 3), 2)
    except OSError as error:
        checks["disk_space_gb"] = f"error: {str(error)[:100]}"

    if scheduler is not None:
        job = scheduler.get_job("purge_expired_documents")
        checks["purge"] = "scheduled" if job and job.next_run_time else "not_scheduled"
        checks["scheduler_running"] = bool(scheduler.running)
    else:
        checks["purge"] = "disabled"
        checks["scheduler_running"] = False

    status = "healthy" if healthy else "unhealthy"
    return jsonify({"status": status, "timestamp": time.time(), "checks": checks}), (
        200 if healthy else 503
    )


@app.route("/organizations", methods=["POST"])
def create_organization_endpoint():
    name = str(_json_body().get("name") or "").strip()
    if not name:
        abort(400, description="Organization name is required")

    organization_id = create_organization(CONFIG, name)
    folder_storage.ensure_organization_directory(derive_slug(name))
    record = get_organization(CONFIG, organization_id)
    return jsonify({"id": record["id"], "name": record["name"], "slug": record["slug"]}), 201


@app.route("/organizations/<organization_id>", methods=["PATCH"])
def rename_organization_endpoint(organization_id: str):
    name = str(_json_body().get("name") or "").strip()
    if not name:
        abort(400, description="Organization name is required")
    if not rename_organization(CONFIG, organization_id, name):
        abort(404, description="Organization not found")

    record = get_organization(CONFIG, organization_id)
    return jsonify({"id": record["id"], "name": record["name"], "slug": record["slug"]})


@app.route("/documents", methods=["POST"])
def upload_document():
    upload = request.files.get("file")
    if upload is None or not upload.filename:
        abort(400, description="File is required")

    organization_id = (request.form.get("organization_id") or "").strip()
    organization = get_organization(CONFIG, organization_id) if organization_id else None
    if organization is None:
        abort(400, description="A valid organization_id is required")

    uploaded_by = (request.headers.get("X-User-Id") or "").strip() or None
    folder_id = (request.form.get("folder_id") or "").strip() or None
    if folder_id:
        folder = get_folder(CONFIG, folder_id)
        if folder is None:
            abort(404, description="Folder not found")
        if uploaded_by and folder["owner"] != uploaded_by:
            abort(403, description="Forbidden")

    try:
        logical_path, _, size = store_document_file(
            upload.stream,
            organization_slug=organization["slug"],
            folder_path=request.form.get("path"),
            original_name=upload.filename,
            config=CONFIG,
        )
    finally:
        upload.close()

    mime_type = upload.mimetype or mimetypes.guess_type(upload.filename)[0]
    document_id = register_document(
        CONFIG,
        filename=logical_path.rsplit("/", 1)[-1],
        original_name=upload.filename,
        path=logical_path,
        organization=organization_id,
        folder=folder_id,
        uploaded_by=uploaded_by,
        size=size,
        mime_type=mime_type,
    )
    lifecycle_logger.info(
        "document_uploaded document_id=%s organization=%s size=%d",
        document_id,
        organization_id,
        size,
    )
    return jsonify(_document_payload(get_document(CONFIG, document_id))), 201


@app.route("/documents/<document_id>/download")
@limiter.limit(lambda: download_rate_limit_string())
def download_document(document_id: str):
    record = _active_document(document_id)
    doc, org = document_refs(CONFIG, record)
    file_path = layout_resolver.resolve(doc, org)
    lifecycle_logger.info("document_downloaded document_id=%s", document_id)
    return send_file(
        file_path,
        as_attachment=True,
        download_name=record["original_name"] or "download",
    )


@app.route("/documents/<document_id>/preview")
@limiter.limit(lambda: download_rate_limit_string())
def preview_document(document_id: str):
    record = _active_document(document_id)
    doc, org = document_refs(CONFIG, record)
    file_path = layout_resolver.resolve(doc, org)
    mime_type = (
        record["mime_type"]
        or mimetypes.guess_type(record["original_name"] or "")[0]
        or "application/octet-stream"
    )
    lifecycle_logger.info("document_previewed document_id=%s", document_id)
    return send_file(
        file_path,
        mimetype=mime_type,
        as_attachment=False,
        download_name=record["original_name"] or "preview",
    )


@app.route("/documents/<document_id>/trash", methods=["POST"])
def trash_document_endpoint(document_id: str):
    reason = _json_body().get("reason")
    try:
        record = trash_document(
            CONFIG,
            document_id,
            deleted_by=(request.headers.get("X-User-Id") or "").strip() or None,
            reason=str(reason) if reason else None,
        )
    except DocumentAlreadyTrashed as error:
        return jsonify({"error": str(error)}), 409
    return jsonify(_document_payload(record))


@app.route("/documents/<document_id>/restore", methods=["POST"])
def restore_document_endpoint(document_id: str):
    try:
        record = restore_document(CONFIG, document_id)
    except DocumentNotTrashed as error:
        return jsonify({"error": str(error)}), 409
    return jsonify(_document_payload(record))


@app.route("/documents/<document_id>", methods=["DELETE"])
def delete_document_endpoint(document_id: str):
    if not purge_document(CONFIG, document_id):
        abort(404, description="Document not found")
    lifecycle_logger.info("document_deleted document_id=%s", document_id)
    return jsonify({"message": "Document deleted successfully"})


@app.route("/trash")
def list_trash():
    documents = [_document_payload(row) for row in list_trashed_documents(CONFIG)]
    return jsonify({"documents": documents, "count": len(documents)})


@app.route("/folders", methods=["POST"])
def create_folder_endpoint():
    owner = _current_user()
    name = str(_json_body().get("name") or "").strip()
    if not name:
        abort(400, description="Folder name is required")

    try:
        folder_id = create_folder(CONFIG, owner, name)
    except FolderNameConflict as error:
        return jsonify({"error": str(error)}), 409

    try:
        folder_storage.create_folder_directory(owner, name, folder_id)
    except DirectoryOperationFailed:
        delete_folder_record(CONFIG, folder_id)
        raise

    lifecycle_logger.info(
        "folder_created folder_id=%s owner=%s", folder_id, sanitize_log_value(owner)
    )
    return jsonify(_folder_payload(get_folder(CONFIG, folder_id))), 201


@app.route("/folders/<folder_id>", methods=["PATCH"])
def rename_folder_endpoint(folder_id: str):
    owner = _current_user()
    folder = _owned_folder(folder_id, owner)
    name = str(_json_body().get("name") or "").strip()
    if not name:
        abort(400, description="Folder name is required")

    try:
        rename_folder(CONFIG, folder_id, name)
    except FolderNameConflict as error:
        return jsonify({"error": str(error)}), 409

    try:
        folder_storage.rename_folder_directory(owner, folder_id, folder["name"], name)
    except DirectoryOperationFailed:
        rename_folder(CONFIG, folder_id, folder["name"])
        raise
    return jsonify(_folder_payload(get_folder(CONFIG, folder_id)))


@app.route("/folders/<folder_id>", methods=["DELETE"])
def delete_folder_endpoint(folder_id: str):
    owner = _current_user()
    _owned_folder(folder_id, owner)
    force = _is_truthy(request.args.get("force"))

    if count_folder_documents(CONFIG, folder_id):
        if not force:
            return jsonify({"error": "Folder is not empty"}), 400
        for document_id in list_folder_document_ids(CONFIG, folder_id):
            purge_document(CONFIG, document_id)

    # Directory first; the record survives a failed removal.
    folder_storage.delete_folder_directory(owner, folder_id)
    delete_folder_record(CONFIG, folder_id)
    lifecycle_logger.info(
        "folder_deleted folder_id=%s owner=%s force=%s",
        folder_id,
        sanitize_log_value(owner),
        force,
    )
    return jsonify({"success": True})


@app.cli.command("locate-document")
@click.argument("document_id")
def locate_document_command(document_id: str) -> None:
    """Show where a document's file is expected and where it actually is."""

    record = get_document(CONFIG, document_id)
    if record is None:
        raise click.ClickException(f"Document {document_id} not found.")

    doc, org = document_refs(CONFIG, record)
    click.echo(f"ID: {record['id']}")
    click.echo(f"Filename: {record['filename']}")
    click.echo(f"Original name: {record['original_name']}")
    click.echo(f"Stored path: {record['path']}")
    click.echo(f"Organization slug: {derive_slug(org.slug)}")
    click.echo(f"Trashed: {bool(record['is_deleted'])}")

    found = False
    for index, entry in enumerate(layout_resolver.diagnose(doc, org), start=1):
        click.echo(f"{index}. [{entry['layout']}] {entry['location']} -> {entry['status']}")
        found = found or entry["status"] == "found"

    if found:
        return

    for root in (CONFIG.storage_root, CONFIG.legacy_uploads_root):
        actual = find_file_recursively(root, record["filename"])
        if actual is not None:
            click.echo(f"Actual location: {actual}")
            return
    click.echo("File not found in any storage root.")


@app.cli.command("purge-trash")
def purge_trash_command() -> None:
    """Purge trashed documents whose deletion date has passed."""

    removed = purge_expired_documents(CONFIG)
    summary = storage_summary(CONFIG)
    click.echo(
        f"Purged {removed} document(s); {summary['documents']} remaining, "
        f"{summary['trashed']} in trash."
    )


if __name__ == "__main__":
    app.run(host="0.0.0.0", port=int(os.environ.get("PORT", "8000")), debug=False)
