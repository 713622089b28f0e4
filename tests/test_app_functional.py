import errno
import io
import logging
import os
import sys
import tempfile
import unittest
from logging.handlers import RotatingFileHandler
from pathlib import Path
from unittest import mock

ENV_KEYS = [
    "CLOUDDOCS_BASE_DIR",
    "CLOUDDOCS_SCHEDULER_ENABLED",
    "CLOUDDOCS_TRASH_RETENTION_DAYS",
]


class CloudDocsAppIntegrationTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name).resolve()
        os.environ["CLOUDDOCS_BASE_DIR"] = str(self.root)
        os.environ["CLOUDDOCS_SCHEDULER_ENABLED"] = "false"
        self._reload_app()
        self.app.config.update(TESTING=True)
        self.client = self.app.test_client()

    def tearDown(self):
        root_logger = logging.getLogger()
        for handler in list(root_logger.handlers):
            if isinstance(handler, RotatingFileHandler) and handler.baseFilename.startswith(
                str(self.root)
            ):
                root_logger.removeHandler(handler)
                handler.close()
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        self._drop_modules()

    def _drop_modules(self):
        for module in list(sys.modules):
            if module == "clouddocs" or module.startswith("clouddocs."):
                del sys.modules[module]

    def _reload_app(self):
        self._drop_modules()
        import importlib

        app_module = importlib.import_module("clouddocs.app")
        storage = importlib.import_module("clouddocs.storage")

        self.app = app_module.app
        self.app_module = app_module
        self.storage = storage
        self.config = app_module.CONFIG

    def _create_organization(self, name="Acme Corp"):
        response = self.client.post("/organizations", json={"name": name})
        self.assertEqual(response.status_code, 201)
        return response.get_json()

    def _upload(self, organization_id, content=b"hello world", filename="sample.txt", **form):
        data = {"file": (io.BytesIO(content), filename), "organization_id": organization_id}
        data.update(form)
        return self.client.post(
            "/documents",
            data=data,
            content_type="multipart/form-data",
            headers={"X-User-Id": "U1"},
        )

    def test_upload_download_and_preview_flow(self):
        organization = self._create_organization()
        self.assertEqual(organization["slug"], "acme-corp")
        self.assertTrue((self.config.storage_root / "acme-corp").is_dir())

        response = self._upload(organization["id"], path="/Q1 Reports")
        self.assertEqual(response.status_code, 201)
        payload = response.get_json()
        self.assertEqual(payload["original_name"], "sample.txt")
        self.assertEqual(payload["size"], 11)
        self.assertTrue(payload["path"].startswith("/Q1-Reports/"))
        self.assertFalse(payload["is_deleted"])

        stored = self.config.storage_root / "acme-corp" / payload["path"].lstrip("/")
        self.assertEqual(stored.read_bytes(), b"hello world")

        download = self.client.get(f"/documents/{payload['id']}/download")
        self.assertEqual(download.status_code, 200)
        self.assertIn("attachment", download.headers.get("Content-Disposition", ""))
        self.assertIn("sample.txt", download.headers.get("Content-Disposition", ""))
        self.assertEqual(download.data, b"hello world")
        self.assertEqual(download.headers.get("X-Content-Type-Options"), "nosniff")
        self.assertTrue(download.headers.get("X-Request-ID"))
        download.close()

        preview = self.client.get(f"/documents/{payload['id']}/preview")
        self.assertEqual(preview.status_code, 200)
        self.assertIn("inline", preview.headers.get("Content-Disposition", ""))
        self.assertEqual(preview.mimetype, "text/plain")
        preview.close()

    def test_upload_validation(self):
        organization = self._create_organization()
        missing_file = self.client.post(
            "/documents",
            data={"organization_id": organization["id"]},
            content_type="multipart/form-data",
        )
        self.assertEqual(missing_file.status_code, 400)

        unknown_org = self._upload("does-not-exist")
        self.assertEqual(unknown_org.status_code, 400)

        unknown_folder = self._upload(organization["id"], folder_id="nope")
        self.assertEqual(unknown_folder.status_code, 404)

    def test_upload_into_foreign_folder_is_forbidden(self):
        organization = self._create_organization()
        folder = self.client.post(
            "/folders", json={"name": "Private"}, headers={"X-User-Id": "U2"}
        ).get_json()
        response = self._upload(organization["id"], folder_id=folder["id"])
        self.assertEqual(response.status_code, 403)

    def test_legacy_uploads_remain_downloadable(self):
        organization = self._create_organization()
        flat = self.config.legacy_uploads_root / "old report.pdf"
        flat.write_bytes(b"flat")
        nested = self.config.legacy_uploads_root / "obs" / "older.pdf"
        nested.parent.mkdir(parents=True)
        nested.write_bytes(b"nested")

        for path, expected in (("old report.pdf", b"flat"), ("older.pdf", b"nested")):
            with self.subTest(path=path):
                document_id = self.storage.register_document(
                    self.config,
                    filename=path,
                    original_name=path,
                    path=path,
                    organization=organization["id"],
                )
                response = self.client.get(f"/documents/{document_id}/download")
                self.assertEqual(response.status_code, 200)
                self.assertEqual(response.data, expected)
                response.close()

    def test_traversal_paths_look_like_missing_documents(self):
        organization = self._create_organization()
        secret = self.root / "secret.txt"
        secret.write_text("top secret", encoding="utf-8")
        document_id = self.storage.register_document(
            self.config,
            filename="secret.txt",
            original_name="secret.txt",
            path="../../secret.txt",
            organization=organization["id"],
        )

        response = self.client.get(f"/documents/{document_id}/download")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {"error": "Document not found"})
        self.assertNotIn(str(self.root), response.get_data(as_text=True))
        self.assertNotIn(b"top secret", response.data)

    def test_missing_document_returns_404(self):
        response = self.client.get("/documents/unknown/download")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.get_json(), {"error": "Document not found"})

    def test_trash_restore_and_delete(self):
        organization = self._create_organization()
        document = self._upload(organization["id"]).get_json()

        trashed = self.client.post(
            f"/documents/{document['id']}/trash",
            json={"reason": "outdated"},
            headers={"X-User-Id": "U1"},
        )
        self.assertEqual(trashed.status_code, 200)
        trashed_payload = trashed.get_json()
        self.assertTrue(trashed_payload["is_deleted"])
        self.assertEqual(trashed_payload["deleted_by"], "U1")
        self.assertEqual(trashed_payload["deletion_reason"], "outdated")
        self.assertEqual(trashed_payload["days_remaining"], 30)
        self.assertTrue(trashed_payload["scheduled_deletion_date"].endswith("Z"))

        again = self.client.post(f"/documents/{document['id']}/trash")
        self.assertEqual(again.status_code, 409)

        self.assertEqual(
            self.client.get(f"/documents/{document['id']}/download").status_code, 404
        )
        listing = self.client.get("/trash").get_json()
        self.assertEqual(listing["count"], 1)
        self.assertEqual(listing["documents"][0]["id"], document["id"])

        restored = self.client.post(f"/documents/{document['id']}/restore")
        self.assertEqual(restored.status_code, 200)
        self.assertFalse(restored.get_json()["is_deleted"])
        self.assertEqual(
            self.client.post(f"/documents/{document['id']}/restore").status_code, 409
        )
        self.assertEqual(self.client.get("/trash").get_json()["count"], 0)

        deleted = self.client.delete(f"/documents/{document['id']}")
        self.assertEqual(deleted.status_code, 200)
        self.assertIsNone(self.storage.get_document(self.config, document["id"]))
        self.assertEqual(self.client.delete(f"/documents/{document['id']}").status_code, 404)

    def test_trash_unknown_document_returns_404(self):
        self.assertEqual(self.client.post("/documents/nope/trash").status_code, 404)
        self.assertEqual(self.client.post("/documents/nope/restore").status_code, 404)

    def test_folder_endpoints(self):
        headers = {"X-User-Id": "U1"}
        self.assertEqual(self.client.post("/folders", json={"name": "Q1 Report"}).status_code, 400)

        created = self.client.post("/folders", json={"name": "Q1 Report"}, headers=headers)
        self.assertEqual(created.status_code, 201)
        folder = created.get_json()
        owner_dir = self.config.storage_root / "U1"
        self.assertTrue((owner_dir / f"q1-report-{folder['id']}").is_dir())

        duplicate = self.client.post("/folders", json={"name": "Q1 Report"}, headers=headers)
        self.assertEqual(duplicate.status_code, 409)

        forbidden = self.client.patch(
            f"/folders/{folder['id']}", json={"name": "Stolen"}, headers={"X-User-Id": "U2"}
        )
        self.assertEqual(forbidden.status_code, 403)
        self.assertEqual(
            self.client.patch("/folders/missing", json={"name": "x"}, headers=headers).status_code,
            404,
        )

        renamed = self.client.patch(
            f"/folders/{folder['id']}", json={"name": "Q1 Final"}, headers=headers
        )
        self.assertEqual(renamed.status_code, 200)
        self.assertEqual(renamed.get_json()["name"], "Q1 Final")
        self.assertFalse((owner_dir / f"q1-report-{folder['id']}").exists())
        self.assertTrue((owner_dir / f"q1-final-{folder['id']}").is_dir())

        deleted = self.client.delete(f"/folders/{folder['id']}", headers=headers)
        self.assertEqual(deleted.status_code, 200)
        self.assertFalse((owner_dir / f"q1-final-{folder['id']}").exists())
        self.assertIsNone(self.storage.get_folder(self.config, folder["id"]))

    def test_folder_rename_conflict(self):
        headers = {"X-User-Id": "U1"}
        self.client.post("/folders", json={"name": "Reports"}, headers=headers)
        drafts = self.client.post("/folders", json={"name": "Drafts"}, headers=headers).get_json()
        response = self.client.patch(
            f"/folders/{drafts['id']}", json={"name": "Reports"}, headers=headers
        )
        self.assertEqual(response.status_code, 409)

    def test_non_empty_folder_requires_force(self):
        headers = {"X-User-Id": "U1"}
        organization = self._create_organization()
        folder = self.client.post("/folders", json={"name": "Reports"}, headers=headers).get_json()
        document = self._upload(organization["id"], folder_id=folder["id"]).get_json()
        self.assertEqual(document["folder"], folder["id"])

        refused = self.client.delete(f"/folders/{folder['id']}", headers=headers)
        self.assertEqual(refused.status_code, 400)
        self.assertEqual(refused.get_json(), {"error": "Folder is not empty"})

        forced = self.client.delete(f"/folders/{folder['id']}?force=true", headers=headers)
        self.assertEqual(forced.status_code, 200)
        self.assertIsNone(self.storage.get_document(self.config, document["id"]))

    def test_organization_rename_keeps_downloads_working(self):
        organization = self._create_organization()
        document = self._upload(organization["id"], content=b"still here").get_json()

        renamed = self.client.patch(
            f"/organizations/{organization['id']}", json={"name": "Acme Holdings"}
        )
        self.assertEqual(renamed.status_code, 200)
        self.assertEqual(renamed.get_json()["slug"], "acme-holdings")
        self.assertTrue((self.config.storage_root / "acme-holdings").is_dir())

        download = self.client.get(f"/documents/{document['id']}/download")
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.data, b"still here")
        download.close()

        self.assertEqual(
            self.client.patch("/organizations/missing", json={"name": "x"}).status_code, 404
        )
        self.assertEqual(self.client.post("/organizations", json={}).status_code, 400)

    def test_slug_prefixed_upload_downloads_after_organization_rename(self):
        organization = self._create_organization()
        document = self._upload(
            organization["id"], content=b"namespaced", path="acme-corp/reports"
        ).get_json()
        self.assertTrue(document["path"].startswith("/reports/"))

        renamed = self.client.patch(
            f"/organizations/{organization['id']}", json={"name": "Beta"}
        )
        self.assertEqual(renamed.status_code, 200)

        download = self.client.get(f"/documents/{document['id']}/download")
        self.assertEqual(download.status_code, 200)
        self.assertEqual(download.data, b"namespaced")
        download.close()

    def test_failed_folder_rename_keeps_record_and_directory(self):
        headers = {"X-User-Id": "U1"}
        folder = self.client.post("/folders", json={"name": "Q1 Report"}, headers=headers).get_json()
        directory = self.config.storage_root / "U1" / f"q1-report-{folder['id']}"
        (directory / "notes.txt").write_text("keep", encoding="utf-8")

        failure = OSError(errno.EACCES, "Permission denied")
        with mock.patch.object(self.storage.os, "replace", side_effect=failure):
            response = self.client.patch(
                f"/folders/{folder['id']}", json={"name": "Q1 Final"}, headers=headers
            )
        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.get_json(), {"error": "Storage operation failed"})
        self.assertEqual(self.storage.get_folder(self.config, folder["id"])["name"], "Q1 Report")
        self.assertTrue((directory / "notes.txt").is_file())

        retried = self.client.patch(
            f"/folders/{folder['id']}", json={"name": "Q1 Final"}, headers=headers
        )
        self.assertEqual(retried.status_code, 200)
        moved = self.config.storage_root / "U1" / f"q1-final-{folder['id']}"
        self.assertTrue((moved / "notes.txt").is_file())
        self.assertFalse(directory.exists())

    def test_failed_folder_delete_can_be_retried(self):
        headers = {"X-User-Id": "U1"}
        folder = self.client.post("/folders", json={"name": "Reports"}, headers=headers).get_json()
        directory = self.config.storage_root / "U1" / f"reports-{folder['id']}"

        failure = OSError(errno.EACCES, "Permission denied")
        with mock.patch.object(self.storage.shutil, "rmtree", side_effect=failure):
            response = self.client.delete(f"/folders/{folder['id']}", headers=headers)
        self.assertEqual(response.status_code, 500)
        self.assertIsNotNone(self.storage.get_folder(self.config, folder["id"]))
        self.assertTrue(directory.is_dir())

        retried = self.client.delete(f"/folders/{folder['id']}", headers=headers)
        self.assertEqual(retried.status_code, 200)
        self.assertIsNone(self.storage.get_folder(self.config, folder["id"]))
        self.assertFalse(directory.exists())

    def test_request_logs_carry_request_id(self):
        with self.assertLogs("clouddocs.lifecycle", level="INFO") as captured:
            response = self.client.get("/health", headers={"X-Request-ID": "req-123"})
        self.assertEqual(response.headers.get("X-Request-ID"), "req-123")
        self.assertTrue(
            any("request_id=req-123 request_completed" in line for line in captured.output)
        )

    def test_health_endpoint(self):
        response = self.client.get("/health")
        self.assertEqual(response.status_code, 200)
        payload = response.get_json()
        self.assertEqual(payload["status"], "healthy")
        self.assertEqual(payload["checks"]["database"], "ok")
        self.assertEqual(payload["checks"]["storage_writable"], "ok")
        self.assertEqual(payload["checks"]["legacy_uploads_writable"], "ok")
        self.assertEqual(payload["checks"]["purge"], "disabled")
        self.assertFalse(payload["checks"]["scheduler_running"])

    def test_locate_document_command(self):
        organization = self._create_organization()
        document = self._upload(organization["id"]).get_json()
        runner = self.app.test_cli_runner()

        result = runner.invoke(args=["locate-document", document["id"]])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Organization slug: acme-corp", result.output)
        self.assertIn("[current]", result.output)
        self.assertIn("-> found", result.output)

        moved = self.config.legacy_uploads_root / "archive" / document["filename"]
        moved.parent.mkdir(parents=True)
        (self.config.storage_root / "acme-corp" / document["path"].lstrip("/")).replace(moved)
        result = runner.invoke(args=["locate-document", document["id"]])
        self.assertIn(f"Actual location: {moved}", result.output)

        missing = runner.invoke(args=["locate-document", "nope"])
        self.assertNotEqual(missing.exit_code, 0)
        self.assertIn("not found", missing.output)

    def test_purge_trash_command(self):
        organization = self._create_organization()
        document = self._upload(organization["id"]).get_json()
        self.client.post(f"/documents/{document['id']}/trash")
        self.config.trash_retention_days = 0

        runner = self.app.test_cli_runner()
        result = runner.invoke(args=["purge-trash"])
        self.assertEqual(result.exit_code, 0, result.output)
        self.assertIn("Purged 0 document(s)", result.output)

        self.client.post(f"/documents/{document['id']}/restore")
        self.client.post(f"/documents/{document['id']}/trash")
        result = runner.invoke(args=["purge-trash"])
        self.assertIn("Purged 1 document(s); 0 remaining", result.output)


if __name__ == "__main__":
    unittest.main()
