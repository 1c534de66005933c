"""
Unit tests for the Flask app factory and diagnostics endpoints.
"""

import json
import os
import tempfile
import unittest
from unittest.mock import patch

from shelfvault import create_app, get_gateway, get_library, get_router
from shelfvault.db import dispose_engines
from shelfvault.logging_utils import configure_log_root
from shelfvault.sharding import ShardConfigurationError, shard_index


class AppTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self._env = patch.dict(os.environ, {}, clear=True)
        self._env.start()
        self.urls = [f"sqlite:///{os.path.join(self._tmp.name, f'd{i}.db')}" for i in range(2)]

    def tearDown(self):
        self._env.stop()
        dispose_engines()
        configure_log_root(None)
        self._tmp.cleanup()

    def make_app(self, **overrides):
        config = {
            "SHARD_COUNT": 2,
            "SHARD_DB_URLS": self.urls,
            "LOG_ROOT": os.path.join(self._tmp.name, "logs"),
            "DIAGNOSTICS_ENABLED": True,
            "DIAGNOSTICS_TOKEN": "diag-secret",
            "GITHUB_TOKEN": "ghp-secret",
            "GITHUB_OWNER": "reader",
        }
        config.update(overrides)
        return create_app(config)


class TestCreateApp(AppTestCase):
    def test_wires_components(self):
        app = self.make_app()

        with app.app_context():
            self.assertEqual(get_router().shard_count, 2)
            self.assertIs(get_library().gateway, get_gateway())
        self.assertEqual([p.provider_id for p in get_library(app).providers], ["github"])

    def test_missing_shard_url_fails_startup(self):
        with self.assertRaises(ShardConfigurationError):
            self.make_app(SHARD_DB_URLS=[self.urls[0], ""])

    def test_startup_is_logged(self):
        self.make_app()
        with open(os.path.join(self._tmp.name, "logs", "system", "logfile"), encoding="utf-8") as f:
            entries = [json.loads(line) for line in f]
        self.assertIn("system_startup", [e["message"] for e in entries])


class TestDiagnostics(AppTestCase):
    HEADERS = {"X-Diag-Token": "diag-secret"}

    def test_disabled_returns_404(self):
        client = self.make_app(DIAGNOSTICS_ENABLED=False).test_client()
        self.assertEqual(client.get("/api/diagnostics/storage", headers=self.HEADERS).status_code, 404)

    def test_token_required(self):
        client = self.make_app().test_client()
        self.assertEqual(client.get("/api/diagnostics/storage").status_code, 401)
        resp = client.get(
            "/api/diagnostics/storage", headers={"Authorization": "Bearer diag-secret"}
        )
        self.assertEqual(resp.status_code, 200)

    def test_storage_status_has_no_secrets(self):
        app = self.make_app()
        get_gateway(app).health.observe("github", False)

        resp = app.test_client().get("/api/diagnostics/storage", headers=self.HEADERS)

        payload = resp.get_json()
        self.assertEqual(payload["providers"][0]["provider"], "github")
        self.assertEqual(payload["health"]["github"]["consecutive_failures"], 1)
        self.assertIn("dropbox", payload["registered_types"])
        self.assertNotIn("ghp-secret", resp.get_data(as_text=True))

    def test_shard_counts(self):
        app = self.make_app()
        get_router(app).shard(1).execute(
            "INSERT INTO books (id, title, storage_provider, storage_id, file_type, uploaded_at) "
            "VALUES ('b1', 'T', 'github', 'r:b1.pdf', 'pdf', 1)"
        )

        payload = app.test_client().get("/api/diagnostics/shards", headers=self.HEADERS).get_json()

        self.assertEqual(payload["shard_count"], 2)
        self.assertEqual(payload["books"], {"0": 0, "1": 1})
        self.assertEqual(payload["failed_shards"], [])

    def test_shard_for_key(self):
        client = self.make_app().test_client()

        payload = client.get("/api/diagnostics/shards/book-42", headers=self.HEADERS).get_json()

        self.assertEqual(payload, {"key": "book-42", "shard": shard_index("book-42", 2), "shard_count": 2})


if __name__ == "__main__":
    unittest.main()
