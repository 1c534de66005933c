"""
Sharded metadata routing.

Every metadata row lives on exactly one of N databases, chosen by hashing its
record key. Single-key work goes through ``MetadataRouter.for_key``;
collection-wide reads fan out with ``MetadataRouter.query_all`` and tolerate
individual shard failures.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.sql.elements import TextClause

from .db import create_shard_engines
from .logging_utils import vault_log


logger = logging.getLogger("shelfvault.shards")

Statement = Union[str, TextClause]
Params = Optional[Mapping[str, Any]]


class ShardError(Exception):
    """Base exception for shard routing failures."""


class ShardConfigurationError(ShardError):
    """The shard pool is missing engines or has the wrong size."""


class ShardUnavailableError(ShardError):
    """A single shard could not be reached."""

    def __init__(self, shard_index: int, message: str) -> None:
        super().__init__(message)
        self.shard_index = shard_index


def _utf16_code_units(key: str) -> Iterable[int]:
    raw = key.encode("utf-16-le", "surrogatepass")
    for i in range(0, len(raw), 2):
        yield raw[i] | (raw[i + 1] << 8)


def shard_index(key: str, shard_count: int) -> int:
    """Map ``key`` to a shard in ``[0, shard_count)``.

    Rolling ``h = h * 31 + unit`` over UTF-16 code units, wrapped to a signed
    32-bit integer after every step. The index is ``abs(h) % shard_count``.
    """

    if shard_count < 1:
        raise ValueError("shard_count must be at least 1")
    h = 0
    for unit in _utf16_code_units(key or ""):
        h = (h * 31 + unit) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h) % shard_count


def _as_statement(statement: Statement) -> TextClause:
    if isinstance(statement, str):
        return text(statement)
    return statement


class FanOutResult(list):
    """Rows merged from every shard, in shard order then row order.

    ``failed_shards`` lists the indexes that contributed nothing because
    their query raised.
    """

    def __init__(self, rows: Iterable[Any] = (), failed_shards: Optional[List[int]] = None) -> None:
        super().__init__(rows)
        self.failed_shards: List[int] = list(failed_shards or [])

    @property
    def partial(self) -> bool:
        return bool(self.failed_shards)


@dataclass
class ShardBatchResult:
    shard_index: int
    success: bool
    results: List[List[Dict[str, Any]]] = field(default_factory=list)
    error: Optional[str] = None


class ShardHandle:
    """Statement runner bound to one shard."""

    def __init__(self, index: int, engine: Engine) -> None:
        self.index = index
        self.engine = engine

    def _unavailable(self, exc: Exception) -> ShardUnavailableError:
        return ShardUnavailableError(self.index, f"shard {self.index} unavailable: {exc}")

    def execute(self, statement: Statement, params: Params = None) -> List[Dict[str, Any]]:
        try:
            with self.engine.begin() as conn:
                result = conn.execute(_as_statement(statement), dict(params or {}))
                if not result.returns_rows:
                    return []
                return [dict(row) for row in result.mappings()]
        except (OperationalError, InterfaceError) as exc:
            raise self._unavailable(exc) from exc

    def execute_many(
        self, statements: Iterable[Tuple[Statement, Params]]
    ) -> List[List[Dict[str, Any]]]:
        """Run ``(statement, params)`` pairs in one transaction."""

        out: List[List[Dict[str, Any]]] = []
        try:
            with self.engine.begin() as conn:
                for statement, params in statements:
                    result = conn.execute(_as_statement(statement), dict(params or {}))
                    if result.returns_rows:
                        out.append([dict(row) for row in result.mappings()])
                    else:
                        out.append([])
        except (OperationalError, InterfaceError) as exc:
            raise self._unavailable(exc) from exc
        return out


class MetadataRouter:
    def __init__(self, engines: Sequence[Optional[Engine]], shard_count: Optional[int] = None) -> None:
        pool = list(engines or [])
        count = len(pool) if shard_count is None else int(shard_count)
        if count < 1:
            raise ShardConfigurationError("at least one shard is required")
        if len(pool) != count:
            raise ShardConfigurationError(
                f"expected {count} shard engines, got {len(pool)}"
            )
        missing = [i for i, engine in enumerate(pool) if engine is None]
        if missing:
            raise ShardConfigurationError(
                "shard(s) not configured: " + ", ".join(str(i) for i in missing)
            )
        seen: Dict[int, int] = {}
        for i, engine in enumerate(pool):
            first = seen.setdefault(id(engine), i)
            if first != i:
                raise ShardConfigurationError(
                    f"shards {first} and {i} share one database; each shard needs its own"
                )
        self.shard_count = count
        self._handles = [ShardHandle(i, engine) for i, engine in enumerate(pool)]

    @property
    def engines(self) -> List[Engine]:
        return [handle.engine for handle in self._handles]

    def shard_index_for(self, key: str) -> int:
        return shard_index(key, self.shard_count)

    def for_key(self, key: str) -> ShardHandle:
        return self._handles[self.shard_index_for(key)]

    def shard(self, index: int) -> ShardHandle:
        return self._handles[index]

    def query_all(
        self,
        statement: Statement,
        params: Params = None,
        map_fn: Optional[Callable[[Dict[str, Any]], Any]] = None,
    ) -> FanOutResult:
        """Run a read-only statement on every shard and merge the rows."""

        rows: List[Any] = []
        failed: List[int] = []
        for handle in self._handles:
            try:
                shard_rows = handle.execute(statement, params)
            except Exception as exc:  # noqa: BLE001
                failed.append(handle.index)
                logger.warning("fan-out query failed on shard %s: %s", handle.index, exc)
                vault_log(
                    "shards",
                    "warn",
                    "fanout_shard_failed",
                    component="router",
                    shard=handle.index,
                    error=f"{type(exc).__name__}: {str(exc)[:500]}",
                )
                continue
            if map_fn is not None:
                shard_rows = [map_fn(row) for row in shard_rows]
            rows.extend(shard_rows)
        return FanOutResult(rows, failed)

    def execute_all(
        self, statements: Sequence[Tuple[Statement, Params]]
    ) -> Dict[int, ShardBatchResult]:
        """Run the same batch on every shard, collecting per-shard outcomes."""

        batch = list(statements)
        outcome: Dict[int, ShardBatchResult] = {}
        for handle in self._handles:
            try:
                results = handle.execute_many(batch)
            except Exception as exc:  # noqa: BLE001
                logger.warning("batch failed on shard %s: %s", handle.index, exc)
                vault_log(
                    "shards",
                    "warn",
                    "batch_shard_failed",
                    component="router",
                    shard=handle.index,
                    error=f"{type(exc).__name__}: {str(exc)[:500]}",
                )
                outcome[handle.index] = ShardBatchResult(
                    shard_index=handle.index, success=False, error=str(exc)
                )
                continue
            outcome[handle.index] = ShardBatchResult(
                shard_index=handle.index, success=True, results=results
            )
        return outcome


def router_from_urls(urls: Sequence[Optional[str]], shard_count: Optional[int] = None) -> MetadataRouter:
    return MetadataRouter(create_shard_engines(urls), shard_count=shard_count)
