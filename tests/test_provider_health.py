"""
Unit tests for the provider health tracker.
"""

import json
import os
import tempfile
import unittest

from shelfvault.logging_utils import configure_log_root
from shelfvault.provider_health import ProviderHealthTracker


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestProviderHealthTracker(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        configure_log_root(os.path.join(self._tmp.name, "logs"))
        self.clock = FakeClock()
        self.tracker = ProviderHealthTracker(clock=self.clock)

    def tearDown(self):
        configure_log_root(None)
        self._tmp.cleanup()

    def test_unknown_provider_is_healthy(self):
        self.assertTrue(self.tracker.is_healthy("gdrive"))
        self.assertIsNone(self.tracker.record("gdrive"))

    def test_three_failures_mark_unhealthy(self):
        self.tracker.observe("dropbox", False)
        self.tracker.observe("dropbox", False)
        self.assertTrue(self.tracker.is_healthy("dropbox"))

        state = self.tracker.observe("dropbox", False)

        self.assertFalse(state.healthy)
        self.assertEqual(state.consecutive_failures, 3)
        self.assertFalse(self.tracker.is_healthy("dropbox"))

    def test_success_restores_health(self):
        for _ in range(3):
            self.tracker.observe("box", False)
        self.assertFalse(self.tracker.is_healthy("box"))

        self.tracker.observe("box", True)

        self.assertTrue(self.tracker.is_healthy("box"))
        self.assertEqual(self.tracker.record("box").consecutive_failures, 0)

    def test_success_breaks_the_failure_streak(self):
        self.tracker.observe("b2", False)
        self.tracker.observe("b2", False)
        self.tracker.observe("b2", True)
        self.tracker.observe("b2", False)
        self.tracker.observe("b2", False)
        self.assertTrue(self.tracker.is_healthy("b2"))

    def test_passive_recovery_after_quiet_period(self):
        for _ in range(3):
            self.tracker.observe("pcloud", False)
        self.clock.advance(299)
        self.assertFalse(self.tracker.is_healthy("pcloud"))

        self.clock.advance(2)

        self.assertTrue(self.tracker.is_healthy("pcloud"))
        # The read itself reset the stored record.
        record = self.tracker.record("pcloud")
        self.assertTrue(record.healthy)
        self.assertEqual(record.consecutive_failures, 0)

    def _health_log(self):
        path = os.path.join(self._tmp.name, "logs", "storage", "logfile")
        with open(path, encoding="utf-8") as f:
            return [json.loads(line) for line in f]

    def test_passive_recovery_is_logged_once(self):
        for _ in range(3):
            self.tracker.observe("onedrive", False)
        self.clock.advance(301)

        self.assertTrue(self.tracker.is_healthy("onedrive"))
        self.assertTrue(self.tracker.is_healthy("onedrive"))

        changes = [e["fields"] for e in self._health_log() if e["message"] == "provider_health_changed"]
        self.assertEqual([c["healthy"] for c in changes], [False, True])
        self.assertEqual(changes[-1]["reason"], "passive_recovery")

    def test_custom_threshold(self):
        tracker = ProviderHealthTracker(failure_threshold=1, clock=self.clock)
        tracker.observe("mega", False)
        self.assertFalse(tracker.is_healthy("mega"))

    def test_threshold_must_be_positive(self):
        with self.assertRaises(ValueError):
            ProviderHealthTracker(failure_threshold=0)

    def test_snapshot_and_reset(self):
        self.tracker.observe("github", True)
        self.tracker.observe("yandex", False)

        snap = self.tracker.snapshot()

        self.assertEqual(sorted(snap), ["github", "yandex"])
        self.assertEqual(snap["yandex"]["consecutive_failures"], 1)
        self.assertEqual(snap["github"]["last_observation"], 1000.0)

        self.tracker.reset("yandex")
        self.assertEqual(sorted(self.tracker.snapshot()), ["github"])
        self.tracker.reset()
        self.assertEqual(self.tracker.snapshot(), {})

    def test_returned_state_is_a_copy(self):
        state = self.tracker.observe("koofr", False)
        state.consecutive_failures = 99
        self.assertEqual(self.tracker.record("koofr").consecutive_failures, 1)


if __name__ == "__main__":
    unittest.main()
