from __future__ import annotations

import logging
import secrets
import string
import time
from typing import Callable, Dict, Iterable, Optional, Sequence, Union

from .logging_utils import vault_log
from .sharding import FanOutResult, MetadataRouter
from .storage_csal import DeleteResult, DownloadResult, ProviderConfig
from .storage_gateway import CascadingStorageGateway


logger = logging.getLogger("shelfvault.library")

SUPPORTED_FILE_TYPES = {
    "epub": "application/epub+zip",
    "pdf": "application/pdf",
}

_ID_ALPHABET = string.digits + string.ascii_lowercase


class BookNotFoundError(LookupError):
    """No metadata row exists for the requested book id."""


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_book_id(now_ms: Optional[int] = None) -> str:
    """Return ``book-<epoch ms>-<6 base36 chars>``."""

    stamp = _now_ms() if now_ms is None else int(now_ms)
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"book-{stamp}-{suffix}"


def _file_type_for(filename: str) -> str:
    name = str(filename or "").strip().lower()
    for ext in SUPPORTED_FILE_TYPES:
        if name.endswith(f".{ext}"):
            return ext
    raise ValueError("Only EPUB and PDF files are supported")


def _normalize_tags(tags: Union[str, Iterable[str], None]) -> Optional[str]:
    if tags is None:
        return None
    if isinstance(tags, str):
        return tags.strip() or None
    joined = ",".join(str(t).strip() for t in tags if str(t).strip())
    return joined or None


class BookLibrary:
    """Book operations that pair a storage upload with a shard metadata row.

    The gateway and the router know nothing about each other; the book row's
    ``storage_provider`` and ``storage_id`` columns are the only link.
    """

    def __init__(
        self,
        router: MetadataRouter,
        gateway: CascadingStorageGateway,
        providers: Sequence[ProviderConfig],
        clock: Optional[Callable[[], int]] = None,
    ) -> None:
        self.router = router
        self.gateway = gateway
        self.providers = list(providers)
        self._clock = clock or _now_ms

    def provider_config(self, provider_id: str) -> Optional[ProviderConfig]:
        for cfg in self.providers:
            if cfg.provider_id == provider_id:
                return cfg
        return None

    def add_book(
        self,
        title: str,
        filename: str,
        data: bytes,
        *,
        author: Optional[str] = None,
        tags: Union[str, Iterable[str], None] = None,
    ) -> Dict[str, object]:
        title = str(title or "").strip()
        if not title:
            raise ValueError("Title is required")
        file_type = _file_type_for(filename)

        now = self._clock()
        book_id = generate_book_id(now)
        result = self.gateway.upload_or_raise(
            self.providers,
            f"{book_id}.{file_type}",
            data,
            SUPPORTED_FILE_TYPES[file_type],
        )

        row = {
            "id": book_id,
            "title": title,
            "author": (author or "").strip() or None,
            "storage_provider": result.provider_id,
            "storage_id": result.storage_id,
            "file_type": file_type,
            "file_size": len(data),
            "tags": _normalize_tags(tags),
            "uploaded_at": now,
        }
        self.router.for_key(book_id).execute(
            "INSERT INTO books (id, title, author, storage_provider, storage_id, "
            "file_type, file_size, tags, is_favorite, custom_order, uploaded_at) "
            "VALUES (:id, :title, :author, :storage_provider, :storage_id, "
            ":file_type, :file_size, :tags, 0, 0, :uploaded_at)",
            row,
        )
        vault_log(
            "storage",
            "info",
            "book_added",
            component="library",
            book_id=book_id,
            provider=result.provider_id,
            shard=self.router.shard_index_for(book_id),
            size=len(data),
        )
        return row

    def list_books(self) -> FanOutResult:
        rows = self.router.query_all(
            "SELECT b.id, b.title, b.author, b.tags, b.cover_url, b.file_type, "
            "b.file_size, b.total_pages, b.is_favorite, b.uploaded_at, b.last_read_at, "
            "COALESCE(p.percent, 0) AS progress "
            "FROM books b LEFT JOIN progress p ON b.id = p.book_id"
        )
        ordered = sorted(rows, key=lambda r: int(r.get("uploaded_at") or 0), reverse=True)
        return FanOutResult(ordered, rows.failed_shards)

    def get_book(self, book_id: str) -> Optional[Dict[str, object]]:
        rows = self.router.for_key(book_id).execute(
            "SELECT * FROM books WHERE id = :id", {"id": book_id}
        )
        return rows[0] if rows else None

    def open_book_file(self, book_id: str) -> DownloadResult:
        book = self.get_book(book_id)
        if book is None:
            raise BookNotFoundError(book_id)
        provider = self.provider_config(str(book["storage_provider"]))
        if provider is None:
            return DownloadResult(
                success=False,
                error=f"Storage provider {book['storage_provider']} not found",
            )
        return self.gateway.download(provider, str(book["storage_id"]))

    def delete_book(self, book_id: str) -> DeleteResult:
        handle = self.router.for_key(book_id)
        book = self.get_book(book_id)
        if book is None:
            raise BookNotFoundError(book_id)

        provider = self.provider_config(str(book["storage_provider"]))
        if provider is None:
            outcome = DeleteResult(
                success=False,
                error=f"Storage provider {book['storage_provider']} not found",
            )
        else:
            outcome = self.gateway.delete(provider, str(book["storage_id"]))
        if not outcome.success:
            logger.warning("blob for %s not deleted: %s", book_id, outcome.error)

        handle.execute_many(
            [
                ("DELETE FROM progress WHERE book_id = :id", {"id": book_id}),
                ("DELETE FROM books WHERE id = :id", {"id": book_id}),
            ]
        )
        vault_log(
            "storage",
            "info" if outcome.success else "warn",
            "book_deleted",
            component="library",
            book_id=book_id,
            provider=book["storage_provider"],
            blob_deleted=outcome.success,
        )
        return outcome

    def get_progress(self, book_id: str) -> Dict[str, object]:
        rows = self.router.for_key(book_id).execute(
            "SELECT percent, current_page, current_chapter, last_read_at "
            "FROM progress WHERE book_id = :id",
            {"id": book_id},
        )
        return rows[0] if rows else {"percent": 0, "current_page": 1}

    def update_progress(
        self,
        book_id: str,
        percent: int = 0,
        current_page: Optional[int] = None,
        current_chapter: Optional[str] = None,
    ) -> Dict[str, object]:
        now = self._clock()
        progress = {
            "book_id": book_id,
            "percent": max(0, min(100, int(percent or 0))),
            "current_page": current_page or None,
            "current_chapter": current_chapter or None,
            "last_read_at": now,
        }
        # Delete + insert keeps the upsert portable across shard backends.
        self.router.for_key(book_id).execute_many(
            [
                ("DELETE FROM progress WHERE book_id = :book_id", {"book_id": book_id}),
                (
                    "INSERT INTO progress (book_id, percent, current_page, current_chapter, last_read_at) "
                    "VALUES (:book_id, :percent, :current_page, :current_chapter, :last_read_at)",
                    progress,
                ),
                (
                    "UPDATE books SET last_read_at = :now WHERE id = :book_id",
                    {"now": now, "book_id": book_id},
                ),
            ]
        )
        return progress

    def update_book(
        self,
        book_id: str,
        title: str,
        author: Optional[str] = None,
        tags: Union[str, Iterable[str], None] = None,
    ) -> Dict[str, object]:
        """Replace title, author and tags; blank author or tags are cleared."""

        title = str(title or "").strip()
        if not title:
            raise ValueError("Title is required")
        handle = self.router.for_key(book_id)
        if self.get_book(book_id) is None:
            raise BookNotFoundError(book_id)

        handle.execute(
            "UPDATE books SET title = :title, author = :author, tags = :tags WHERE id = :id",
            {
                "title": title,
                "author": (author or "").strip() or None,
                "tags": _normalize_tags(tags),
                "id": book_id,
            },
        )
        return self.get_book(book_id)

    def set_favorite(self, book_id: str, favorite: bool) -> None:
        self.router.for_key(book_id).execute(
            "UPDATE books SET is_favorite = :fav WHERE id = :id",
            {"fav": 1 if favorite else 0, "id": book_id},
        )

    def shard_counts(self) -> Dict[int, Optional[int]]:
        """Per-shard ``books`` row counts; ``None`` for unreachable shards."""

        counts: Dict[int, Optional[int]] = {}
        for index in range(self.router.shard_count):
            try:
                rows = self.router.shard(index).execute("SELECT COUNT(*) AS n FROM books")
            except Exception as exc:  # noqa: BLE001
                logger.warning("count failed on shard %s: %s", index, exc)
                counts[index] = None
                continue
            counts[index] = int(rows[0]["n"]) if rows else 0
        return counts

