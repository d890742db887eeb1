import importlib
import json
import os
import sys
import tempfile
import unittest
from pathlib import Path


ENV_KEYS = [
    "FILEVAULT_STORAGE_ROOT",
    "FILEVAULT_DATA_DIR",
    "FILEVAULT_UPLOADS_DIR",
    "FILEVAULT_LOGS_DIR",
]


class StorageTests(unittest.TestCase):
    def setUp(self):
        self.storage_dir = tempfile.TemporaryDirectory()
        self.root = Path(self.storage_dir.name)
        os.environ["FILEVAULT_STORAGE_ROOT"] = str(self.root)
        os.environ["FILEVAULT_DATA_DIR"] = str(self.root / "data")
        os.environ["FILEVAULT_UPLOADS_DIR"] = str(self.root / "uploads")
        os.environ["FILEVAULT_LOGS_DIR"] = str(self.root / "logs")
        sys.modules.pop("filevault.storage", None)
        self.storage = importlib.import_module("filevault.storage")

    def tearDown(self):
        self.storage_dir.cleanup()
        for key in ENV_KEYS:
            os.environ.pop(key, None)
        sys.modules.pop("filevault.storage", None)

    def test_storage_path_rejects_traversal(self):
        for filename in ["../escape.txt", "a/../../escape.txt", "/etc/passwd", "a//b", "a\\b", ""]:
            with self.subTest(filename=filename):
                with self.assertRaises(ValueError):
                    self.storage.get_storage_path("w-1", filename)

    def test_storage_path_rejects_bad_warehouse(self):
        for warehouse_id in ["..", "a/b", ""]:
            with self.subTest(warehouse_id=warehouse_id):
                with self.assertRaises(ValueError):
                    self.storage.get_storage_path(warehouse_id, "file.txt")

    def test_storage_path_creates_parent(self):
        path = self.storage.get_storage_path("w-1", "nested/dir/file.txt", ensure_parent=True)
        self.assertTrue(path.parent.is_dir())
        self.assertEqual(path, self.root / "uploads" / "w-1" / "nested" / "dir" / "file.txt")

    def test_config_normalizes_invalid_values(self):
        config_path = self.root / "data" / "config.json"
        config_path.write_text(
            json.dumps(
                {
                    "max_upload_size_mb": "NaN",
                    "auth_rate_limit_per_minute": -5,
                    "download_rate_limit_per_minute": "120",
                }
            ),
            encoding="utf-8",
        )
        config = self.storage.load_config()
        self.assertEqual(
            config["max_upload_size_mb"], self.storage.DEFAULT_CONFIG["max_upload_size_mb"]
        )
        self.assertEqual(
            config["auth_rate_limit_per_minute"],
            self.storage.DEFAULT_CONFIG["auth_rate_limit_per_minute"],
        )
        self.assertEqual(config["download_rate_limit_per_minute"], 120)

    def test_delete_warehouse_cascades(self):
        warehouse = self.storage.create_warehouse("Main", None)
        warehouse_id = warehouse["id"]
        self.storage.create_api_key(warehouse_id, "raw-key")
        user = self.storage.create_user(
            "user@example.com", "hash", warehouse_ids=[warehouse_id]
        )
        path = self.storage.get_storage_path(warehouse_id, "doc.txt", ensure_parent=True)
        path.write_bytes(b"data")
        record = self.storage.register_file(warehouse_id, "doc.txt", "doc.txt", user["id"], 4)

        self.assertTrue(self.storage.delete_warehouse(warehouse_id))

        self.assertIsNone(self.storage.get_file(record["id"]))
        self.assertIsNone(self.storage.find_api_key("raw-key"))
        self.assertEqual(self.storage.get_user_warehouse_ids(user["id"]), [])
        self.assertFalse(path.exists())
        self.assertFalse(self.storage.delete_warehouse(warehouse_id))

    def test_find_api_key_records_usage(self):
        warehouse = self.storage.create_warehouse("Main")
        self.storage.create_api_key(warehouse["id"], "secret-key")

        row = self.storage.find_api_key("secret-key")
        self.assertIsNotNone(row)
        self.assertEqual(row["warehouse_id"], warehouse["id"])
        self.assertNotEqual(row["key_hash"], "secret-key")

        listed = self.storage.list_api_keys()
        self.assertIsNotNone(listed[0]["last_used_at"])
        self.assertEqual(listed[0]["warehouse_name"], "Main")

    def test_delete_file_removes_bytes_and_empty_folders(self):
        warehouse = self.storage.create_warehouse("Main")
        path = self.storage.get_storage_path(warehouse["id"], "folder/doc.txt", ensure_parent=True)
        path.write_bytes(b"data")
        record = self.storage.register_file(warehouse["id"], "folder/doc.txt", "doc.txt", "u", 4)

        self.assertTrue(self.storage.delete_file(record["id"]))
        self.assertFalse(path.exists())
        self.assertFalse(path.parent.exists())
        self.assertFalse(self.storage.delete_file(record["id"]))

    def test_update_user_replaces_entitlements(self):
        first = self.storage.create_warehouse("First")
        second = self.storage.create_warehouse("Second")
        user = self.storage.create_user("a@example.com", "hash", warehouse_ids=[first["id"]])

        updated = self.storage.update_user(user["id"], name="Alice", warehouse_ids=[second["id"]])

        self.assertEqual(updated["name"], "Alice")
        self.assertEqual(self.storage.get_user_warehouse_ids(user["id"]), [second["id"]])
        self.assertIsNone(self.storage.update_user("missing", name="x"))


if __name__ == "__main__":
    unittest.main()
