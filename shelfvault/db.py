from __future__ import annotations

from typing import Dict, List, Optional, Sequence

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.engine import URL, make_url


_engines: Dict[str, Engine] = {}
_memory_engines: List[Engine] = []


def _is_sqlite_memory(cfg_url: URL) -> bool:
    if cfg_url.get_backend_name() != "sqlite":
        return False
    database = cfg_url.database or ""
    return database in ("", ":memory:")


def create_shard_engine(url: str) -> Engine:
    """Return a cached SQLAlchemy engine for one shard URL.

    Engines are shared per URL within the process so that building several
    routers (app factory, scripts) does not multiply connection pools.
    In-memory SQLite URLs are never cached: each call is a separate database.
    """

    cfg_url = make_url(str(url))
    in_memory = _is_sqlite_memory(cfg_url)
    cache_key = cfg_url.render_as_string(hide_password=False)
    engine = None if in_memory else _engines.get(cache_key)
    if engine is not None:
        return engine

    if cfg_url.get_backend_name() == "sqlite":
        # SQLite pools are file handles; sizing options do not apply.
        engine = create_engine(cfg_url, future=True, pool_pre_ping=True)
    else:
        # Ten shards per process: keep each pool small so workers multiplied
        # by shards stay under the server's max_connections.
        engine = create_engine(
            cfg_url,
            future=True,
            pool_size=2,
            max_overflow=0,
            pool_timeout=30,
            pool_recycle=1800,
            pool_pre_ping=True,
            pool_use_lifo=True,
        )
    if in_memory:
        _memory_engines.append(engine)
    else:
        _engines[cache_key] = engine
    return engine


def create_shard_engines(urls: Sequence[Optional[str]]) -> List[Optional[Engine]]:
    """Build engines for ``urls``; blank entries stay ``None``."""

    engines: List[Optional[Engine]] = []
    for url in urls:
        raw = str(url or "").strip()
        engines.append(create_shard_engine(raw) if raw else None)
    return engines


def dispose_engines() -> None:
    for engine in list(_engines.values()) + _memory_engines:
        engine.dispose()
    _engines.clear()
    _memory_engines.clear()
