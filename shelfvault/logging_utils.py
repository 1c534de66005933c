"""
Per-category JSONL event logs under ``<log root>/<category>/logfile``.

Storage cascades, health transitions and shard fan-out failures are written
here so a failed upload can be traced after the fact. Writing is best-effort:
a full disk or a read-only log root never breaks a request.
"""

from __future__ import annotations

import itertools
import json
import os
import threading
from collections import defaultdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


LOG_MAX_BYTES = 30 * 1024 * 1024
LOG_CATEGORIES = ("system", "storage", "shards")

_locks: defaultdict[str, threading.Lock] = defaultdict(threading.Lock)
_locks_guard = threading.Lock()
_log_root: Optional[Path] = None


def configure_log_root(root: str | os.PathLike | None) -> None:
    """Point JSONL logging at ``root``; ``None`` restores the env default."""

    global _log_root
    _log_root = Path(root) if root else None


def _category(name: str) -> str:
    return (name or "").strip().lower() or "system"


def _logfile(category: str) -> Path:
    root = _log_root or Path(os.environ.get("SHELFVAULT_LOG_ROOT") or "/var/log/shelfvault")
    return root / category / "logfile"


def _lock(category: str) -> threading.Lock:
    with _locks_guard:
        return _locks[category]


def _roll_over(path: Path) -> None:
    """Rename ``path`` to ``logfile.MM-DD-YYYY``, adding ``.n`` on collision."""

    stamp = datetime.now(timezone.utc).strftime("%m-%d-%Y")
    names = itertools.chain(
        [f"{path.name}.{stamp}"], (f"{path.name}.{stamp}.{n}" for n in itertools.count(1))
    )
    target = next(path.with_name(name) for name in names if not path.with_name(name).exists())
    try:
        path.rename(target)
    except OSError:
        pass


def vault_rotate_logs_on_startup() -> None:
    """Move each existing category logfile aside so a run starts clean."""

    for category in LOG_CATEGORIES:
        path = _logfile(category)
        with _lock(category):
            if path.exists():
                _roll_over(path)


def vault_log(
    category: str,
    level: str,
    message: str,
    *,
    component: str = "",
    **fields,
) -> None:
    """Append one JSON line to the category logfile. Never raises."""

    cat = _category(category)
    entry = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "level": (level or "").strip().lower() or "info",
        "category": cat,
        "component": component or None,
        "message": str(message or ""),
        "fields": fields or None,
    }
    try:
        line = json.dumps(entry, ensure_ascii=False, separators=(",", ":"), default=str) + "\n"
    except (TypeError, ValueError):
        return

    path = _logfile(cat)
    with _lock(cat):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            if path.exists() and path.stat().st_size >= LOG_MAX_BYTES:
                _roll_over(path)
            with open(path, "a", encoding="utf-8", errors="replace") as f:
                f.write(line)
        except OSError:
            return


def vault_log_exception(
    category: str,
    message: str,
    *,
    component: str = "",
    exc: Optional[BaseException] = None,
    **fields,
) -> None:
    summary = f"{type(exc).__name__}: {str(exc)[:500]}" if exc is not None else ""
    vault_log(category, "error", message, component=component, exception=summary, **fields)
