from __future__ import annotations

from typing import Optional

from sqlalchemy import BigInteger, Index, Integer, String, Text, text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class ShardBase(DeclarativeBase):
    """Declarative base for the per-shard book metadata schema.

    Every shard carries the same tables; a row lives on the shard selected
    by hashing its book id.
    """


class Book(ShardBase):
    __tablename__ = "books"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    title: Mapped[str] = mapped_column(String(512))
    author: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    storage_provider: Mapped[str] = mapped_column(String(32))
    storage_id: Mapped[str] = mapped_column(String(1024))
    cover_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    file_type: Mapped[str] = mapped_column(String(16))
    file_size: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    tags: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    total_pages: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_favorite: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    custom_order: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    # Epoch milliseconds.
    uploaded_at: Mapped[int] = mapped_column(BigInteger)
    last_read_at: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)

    __table_args__ = (
        Index("idx_books_uploaded", "uploaded_at"),
        Index("idx_books_title", "title"),
    )


class ReadingProgress(ShardBase):
    __tablename__ = "progress"

    book_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    percent: Mapped[int] = mapped_column(Integer, default=0, server_default=text("0"))
    current_page: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    current_chapter: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    last_read_at: Mapped[int] = mapped_column(BigInteger)


def create_shard_schema(engine) -> None:
    """Create the book metadata tables on one shard engine."""

    for tbl in (Book.__table__, ReadingProgress.__table__):
        tbl.create(bind=engine, checkfirst=True)


def create_all_shard_schemas(router) -> None:
    for engine in router.engines:
        create_shard_schema(engine)
