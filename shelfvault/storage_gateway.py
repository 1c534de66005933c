from __future__ import annotations

import logging
import time
from typing import Iterable, List, Optional, Tuple

from .logging_utils import vault_log
from .provider_health import ProviderHealthTracker
from .storage_csal import (
    DEFAULT_CONTENT_TYPE,
    AdapterFactory,
    AllProvidersFailedError,
    DeleteResult,
    DownloadResult,
    ProviderConfig,
    UploadResult,
    build_adapter,
)


logger = logging.getLogger("shelfvault.storage.gateway")

ALL_PROVIDERS_FAILED = "All storage providers failed"


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _describe_error(exc: BaseException) -> str:
    return f"{type(exc).__name__}: {str(exc)[:500]}"


class CascadingStorageGateway:
    """Store blobs through an ordered list of storage providers.

    Uploads try each candidate in turn until one succeeds; downloads and
    deletes go to exactly the provider that holds the object. Every attempt
    feeds the injected ``ProviderHealthTracker``.
    """

    def __init__(
        self,
        health: Optional[ProviderHealthTracker] = None,
        adapter_factory: AdapterFactory = build_adapter,
        timeout_seconds: float = 60.0,
    ) -> None:
        self.health = health or ProviderHealthTracker()
        self._adapter_factory = adapter_factory
        self.timeout_seconds = float(timeout_seconds)

    def order_candidates(
        self, providers: Iterable[ProviderConfig]
    ) -> List[Tuple[ProviderConfig, bool]]:
        """Return ``(config, healthy)`` pairs by priority, healthy first on ties."""

        annotated = [(cfg, self.health.is_healthy(cfg.provider_id)) for cfg in providers]
        return sorted(annotated, key=lambda item: (item[0].priority, 0 if item[1] else 1))

    def upload(
        self,
        providers: Iterable[ProviderConfig],
        object_key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> UploadResult:
        ordered = self.order_candidates(providers)
        attempted: List[str] = []
        if not ordered:
            logger.warning("upload of %s requested with no storage providers", object_key)
            return UploadResult(success=False, error="No storage providers configured")

        last_index = len(ordered) - 1
        for i, (cfg, healthy) in enumerate(ordered):
            provider_id = cfg.provider_id
            # An unhealthy provider still gets a chance when nothing follows it.
            if not healthy and i < last_index:
                logger.info("skipping unhealthy storage provider %s", provider_id)
                vault_log(
                    "storage",
                    "info",
                    "upload_skipped_unhealthy",
                    component="gateway",
                    provider=provider_id,
                    object_key=object_key,
                )
                continue

            attempted.append(provider_id)
            started = time.monotonic()
            try:
                adapter = self._adapter_factory(cfg, self.timeout_seconds)
                result = adapter.upload(object_key, data, content_type)
            except Exception as exc:  # noqa: BLE001
                self._record_failure("upload", provider_id, _describe_error(exc), started, object_key)
                continue

            if not result.success:
                self._record_failure(
                    "upload", provider_id, result.error or "upload failed", started, object_key
                )
                continue

            self.health.observe(provider_id, True)
            vault_log(
                "storage",
                "info",
                "upload_succeeded",
                component="gateway",
                provider=provider_id,
                object_key=object_key,
                storage_id=result.storage_id,
                elapsed_ms=_elapsed_ms(started),
            )
            return UploadResult(
                success=True,
                provider_id=provider_id,
                storage_id=result.storage_id,
                locator_url=result.locator_url,
                attempted=attempted,
            )

        logger.error("all storage providers failed for %s (tried %s)", object_key, attempted)
        return UploadResult(success=False, error=ALL_PROVIDERS_FAILED, attempted=attempted)

    def upload_or_raise(
        self,
        providers: Iterable[ProviderConfig],
        object_key: str,
        data: bytes,
        content_type: str = DEFAULT_CONTENT_TYPE,
    ) -> UploadResult:
        result = self.upload(providers, object_key, data, content_type)
        if not result.success:
            raise AllProvidersFailedError(result.error or ALL_PROVIDERS_FAILED, result.attempted)
        return result

    def download(self, provider: ProviderConfig, storage_id: str) -> DownloadResult:
        provider_id = provider.provider_id
        started = time.monotonic()
        try:
            adapter = self._adapter_factory(provider, self.timeout_seconds)
            result = adapter.download(storage_id)
        except Exception as exc:  # noqa: BLE001
            error = _describe_error(exc)
            self._record_failure("download", provider_id, error, started, storage_id)
            return DownloadResult(success=False, error=error)

        if not result.success:
            self._record_failure(
                "download", provider_id, result.error or "download failed", started, storage_id
            )
            return result

        self.health.observe(provider_id, True)
        vault_log(
            "storage",
            "info",
            "download_succeeded",
            component="gateway",
            provider=provider_id,
            storage_id=storage_id,
            bytes=len(result.data or b""),
            elapsed_ms=_elapsed_ms(started),
        )
        if not result.content_type:
            result.content_type = DEFAULT_CONTENT_TYPE
        return result

    def delete(self, provider: ProviderConfig, storage_id: str) -> DeleteResult:
        provider_id = provider.provider_id
        started = time.monotonic()
        try:
            adapter = self._adapter_factory(provider, self.timeout_seconds)
            result = adapter.delete(storage_id)
        except Exception as exc:  # noqa: BLE001
            error = _describe_error(exc)
            self._record_failure("delete", provider_id, error, started, storage_id)
            return DeleteResult(success=False, error=error)

        if not result.success:
            self._record_failure(
                "delete", provider_id, result.error or "delete failed", started, storage_id
            )
            return result

        self.health.observe(provider_id, True)
        vault_log(
            "storage",
            "info",
            "delete_succeeded",
            component="gateway",
            provider=provider_id,
            storage_id=storage_id,
            elapsed_ms=_elapsed_ms(started),
        )
        return result

    def _record_failure(
        self,
        operation: str,
        provider_id: str,
        error: str,
        started: float,
        target: str,
    ) -> None:
        self.health.observe(provider_id, False)
        logger.warning("storage %s via %s failed: %s", operation, provider_id, error)
        vault_log(
            "storage",
            "warn",
            f"{operation}_failed",
            component="gateway",
            provider=provider_id,
            target=target,
            error=error,
            elapsed_ms=_elapsed_ms(started),
        )
