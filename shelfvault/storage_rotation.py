from __future__ import annotations

import logging
from typing import Optional, Protocol

from .logging_utils import vault_log
from .storage_csal import CapacityExceededError


logger = logging.getLogger("shelfvault.storage.rotation")


class RotatingContainerBackend(Protocol):
    """A single-container writer that the rotation helper can drive.

    ``write`` returns False when the container rejected the object because it
    is full or missing; any other failure should raise.
    """

    def write(self, container: str, object_key: str, data: bytes) -> bool: ...

    def container_size(self, container: str) -> Optional[int]: ...

    def create_container(self, container: str) -> bool: ...


class ContainerRotation:
    """Spread writes over sequentially numbered containers.

    The configured container is tried first. When it rejects the write, the
    containers ``<prefix>-1 .. <prefix>-<max_containers>`` are probed in
    order: a missing container is created and written to, an existing one is
    used only while its reported size is under ``size_limit`` bytes.
    """

    def __init__(
        self,
        container_prefix: str,
        *,
        max_containers: int = 100,
        size_limit: int = 4 * 1024 * 1024 * 1024,
    ) -> None:
        self.container_prefix = container_prefix
        self.max_containers = max_containers
        self.size_limit = size_limit

    def container_name(self, index: int) -> str:
        return f"{self.container_prefix}-{index}"

    def write(
        self,
        backend: RotatingContainerBackend,
        container: str,
        object_key: str,
        data: bytes,
    ) -> str:
        """Write ``data`` and return the container that accepted it."""

        if backend.write(container, object_key, data):
            return container

        logger.info("container %s rejected %s, rotating", container, object_key)
        for i in range(1, self.max_containers + 1):
            candidate = self.container_name(i)
            if candidate == container:
                continue

            size = backend.container_size(candidate)
            if size is None:
                if not backend.create_container(candidate):
                    continue
                vault_log(
                    "storage",
                    "info",
                    "container_created",
                    component="rotation",
                    container=candidate,
                )
                if backend.write(candidate, object_key, data):
                    return candidate
                continue

            if size >= self.size_limit:
                continue
            if backend.write(candidate, object_key, data):
                return candidate

        raise CapacityExceededError(
            f"no container under {self.container_prefix!r} accepted {object_key}"
        )
