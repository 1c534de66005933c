from __future__ import annotations

"""Core Storage Abstraction Layer (CSAL).

This module defines the canonical storage contract shared by the cascading
gateway and the per-vendor adapters in ``storage_providers``. The gateway only
depends on this interface and on ``ProviderConfig``; all vendor-specific HTTP
logic lives in the adapters, which register themselves by provider tag.
"""

import importlib
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional


DEFAULT_CONTENT_TYPE = "application/octet-stream"


class StorageError(Exception):
    """Base exception for storage-related failures."""


class StorageAuthError(StorageError):
    """Authentication or authorization failure when talking to a provider."""


class StorageTransientError(StorageError):
    """Transient failure that may succeed on retry (network, rate limits)."""


class StoragePermanentError(StorageError):
    """Permanent failure that should not be retried as-is."""


class ProviderConfigError(StorageError):
    """The provider tag is unknown or its credentials are incomplete."""


class CapacityExceededError(StorageError):
    """Every candidate container is full or could not be created."""


class AllProvidersFailedError(StorageError):
    """Every candidate provider failed during an upload cascade."""

    def __init__(self, message: str, attempted: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.attempted = list(attempted or [])


@dataclass(frozen=True)
class ProviderConfig:
    """Configuration for one storage backend.

    ``provider_type`` is the tag selecting the adapter (``gdrive``,
    ``dropbox``, ... ``github``) and doubles as the persisted provider id and
    the health tracker key. ``options`` carries that vendor's credential and
    path fields with the env prefix stripped (``access_token``,
    ``folder_id``, ...).
    """

    provider_type: str
    priority: int = 0
    options: Mapping[str, Any] = field(default_factory=dict)

    @property
    def provider_id(self) -> str:
        return (self.provider_type or "").strip().lower()

    def option(self, key: str, default: Optional[str] = None) -> Optional[str]:
        value = self.options.get(key)
        text = str(value).strip() if value is not None else ""
        return text or default

    def require(self, key: str) -> str:
        value = self.option(key)
        if not value:
            raise ProviderConfigError(
                f"{self.provider_id} provider is missing required option '{key}'"
            )
        return value

    def describe(self) -> Dict[str, Any]:
        """Return a secret-free summary suitable for diagnostics output."""

        return {
            "provider": self.provider_id,
            "priority": self.priority,
            "options": sorted(self.options.keys()),
        }


@dataclass
class UploadResult:
    success: bool
    provider_id: Optional[str] = None
    storage_id: Optional[str] = None
    locator_url: Optional[str] = None
    error: Optional[str] = None
    attempted: List[str] = field(default_factory=list)


@dataclass
class DownloadResult:
    success: bool
    data: Optional[bytes] = None
    content_type: Optional[str] = None
    error: Optional[str] = None


@dataclass
class DeleteResult:
    success: bool
    error: Optional[str] = None


class StorageAdapter:
    """Interface implemented by every storage backend.

    Adapters raise a ``StorageError`` subclass (or let a
    ``requests.RequestException`` escape) on failure and return a successful
    result otherwise. Any multi-step protocol a vendor needs (token refresh,
    upload URLs, checksums) stays inside the adapter.
    """

    provider_id: str = ""

    def upload(self, object_key: str, data: bytes, content_type: str) -> UploadResult:
        raise NotImplementedError

    def download(self, storage_id: str) -> DownloadResult:
        raise NotImplementedError

    def delete(self, storage_id: str) -> DeleteResult:
        raise NotImplementedError


AdapterFactory = Callable[[ProviderConfig, float], StorageAdapter]

# Provider registry: mapping provider_type -> factory callable. The built-in
# factories are registered from ``storage_providers`` at import time.
_factories: Dict[str, AdapterFactory] = {}


def register_adapter(provider_type: str, factory: AdapterFactory) -> None:
    key = (provider_type or "").strip().lower()
    if not key:
        return
    _factories[key] = factory


def registered_provider_types() -> List[str]:
    _load_builtin_adapters()
    return sorted(_factories)


def _load_builtin_adapters() -> None:
    importlib.import_module("shelfvault.storage_providers")


def build_adapter(config: ProviderConfig, timeout: float = 60.0) -> StorageAdapter:
    """Construct the adapter for ``config`` through the provider registry."""

    _load_builtin_adapters()
    factory = _factories.get(config.provider_id)
    if factory is None:
        raise ProviderConfigError(f"unsupported storage type: {config.provider_type}")
    return factory(config, timeout)
