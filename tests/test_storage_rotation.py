"""
Unit tests for numbered-container rotation.
"""

import os
import tempfile
import unittest

from shelfvault.logging_utils import configure_log_root
from shelfvault.storage_csal import CapacityExceededError
from shelfvault.storage_rotation import ContainerRotation


class FakeBackend:
    """In-memory containers with a per-container capacity in bytes."""

    def __init__(self, sizes=None, full=(), creatable=True):
        self.sizes = dict(sizes or {})
        self.full = set(full)
        self.creatable = creatable
        self.objects = {}
        self.created = []
        self.writes = []

    def write(self, container, object_key, data):
        self.writes.append(container)
        if container not in self.sizes or container in self.full:
            return False
        self.objects[(container, object_key)] = data
        self.sizes[container] += len(data)
        return True

    def container_size(self, container):
        return self.sizes.get(container)

    def create_container(self, container):
        if not self.creatable:
            return False
        self.sizes[container] = 0
        self.created.append(container)
        return True


class TestContainerRotation(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        configure_log_root(os.path.join(self._tmp.name, "logs"))

    def tearDown(self):
        configure_log_root(None)
        self._tmp.cleanup()

    def test_configured_container_used_first(self):
        backend = FakeBackend(sizes={"store-1": 0})
        rotation = ContainerRotation("store", max_containers=5, size_limit=100)

        self.assertEqual(rotation.write(backend, "store-1", "a", b"xx"), "store-1")
        self.assertEqual(backend.writes, ["store-1"])

    def test_rotates_past_full_containers(self):
        backend = FakeBackend(
            sizes={"store-1": 10, "store-2": 100, "store-3": 5},
            full={"store-1"},
        )
        rotation = ContainerRotation("store", max_containers=5, size_limit=100)

        chosen = rotation.write(backend, "store-1", "book.epub", b"data")

        # store-2 is at the limit and is never written to.
        self.assertEqual(chosen, "store-3")
        self.assertEqual(backend.writes, ["store-1", "store-3"])

    def test_creates_missing_container(self):
        backend = FakeBackend(sizes={"store-1": 0}, full={"store-1"})
        rotation = ContainerRotation("store", max_containers=5, size_limit=100)

        chosen = rotation.write(backend, "store-1", "k", b"d")

        self.assertEqual(chosen, "store-2")
        self.assertEqual(backend.created, ["store-2"])
        self.assertEqual(backend.objects[("store-2", "k")], b"d")

    def test_exhaustion_raises(self):
        backend = FakeBackend(sizes={"store-1": 0}, full={"store-1"}, creatable=False)
        rotation = ContainerRotation("store", max_containers=3, size_limit=100)

        with self.assertRaises(CapacityExceededError):
            rotation.write(backend, "store-1", "k", b"d")

    def test_container_names(self):
        rotation = ContainerRotation("shelfvault-storage")
        self.assertEqual(rotation.container_name(7), "shelfvault-storage-7")
        self.assertEqual(rotation.max_containers, 100)
        self.assertEqual(rotation.size_limit, 4 * 1024 ** 3)


if __name__ == "__main__":
    unittest.main()
