"""
Unit tests for the JSONL event logs.
"""

import json
import os
import tempfile
import unittest
from unittest.mock import patch

from shelfvault import logging_utils
from shelfvault.logging_utils import (
    configure_log_root,
    vault_log,
    vault_log_exception,
    vault_rotate_logs_on_startup,
)


class TestVaultLog(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.root = os.path.join(self._tmp.name, "logs")
        configure_log_root(self.root)

    def tearDown(self):
        configure_log_root(None)
        self._tmp.cleanup()

    def _dir(self, category):
        return os.path.join(self.root, category)

    def _entries(self, category):
        with open(os.path.join(self._dir(category), "logfile"), encoding="utf-8") as f:
            return [json.loads(line) for line in f]

    def test_writes_one_json_line_per_call(self):
        vault_log("Storage", "WARN", "upload_failed", component="gateway", provider="box")
        vault_log("", "", "started")

        (entry,) = self._entries("storage")
        self.assertEqual(entry["level"], "warn")
        self.assertEqual(entry["component"], "gateway")
        self.assertEqual(entry["fields"], {"provider": "box"})
        self.assertEqual(self._entries("system")[0]["message"], "started")

    def test_exception_summary(self):
        vault_log_exception("system", "unhandled", exc=RuntimeError("boom"), path="/x")

        (entry,) = self._entries("system")
        self.assertEqual(entry["level"], "error")
        self.assertEqual(entry["fields"], {"exception": "RuntimeError: boom", "path": "/x"})

    def test_size_rollover_moves_full_file_aside(self):
        with patch.object(logging_utils, "LOG_MAX_BYTES", 10):
            vault_log("shards", "info", "first")
            vault_log("shards", "info", "second")

        names = sorted(os.listdir(self._dir("shards")))
        self.assertEqual(len(names), 2)
        self.assertEqual(names[0], "logfile")
        self.assertRegex(names[1], r"^logfile\.\d{2}-\d{2}-\d{4}$")
        self.assertEqual([e["message"] for e in self._entries("shards")], ["second"])

    def test_startup_rotation_numbers_same_day_files(self):
        vault_log("storage", "info", "one")
        vault_rotate_logs_on_startup()
        vault_log("storage", "info", "two")
        vault_rotate_logs_on_startup()

        names = sorted(os.listdir(self._dir("storage")))
        self.assertEqual(len(names), 2)
        self.assertNotIn("logfile", names)
        self.assertTrue(names[1].endswith(".1"))

    def test_unwritable_root_is_ignored(self):
        blocker = os.path.join(self._tmp.name, "blocker")
        with open(blocker, "w") as f:
            f.write("x")
        configure_log_root(blocker)

        vault_log("system", "info", "dropped")


if __name__ == "__main__":
    unittest.main()
