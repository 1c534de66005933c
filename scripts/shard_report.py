#!/usr/bin/env python3

from __future__ import annotations

import argparse
import re
import sys
from pathlib import Path

_HERE = Path(__file__).resolve()
for _candidate in (_HERE.parent, *_HERE.parents):
    try:
        if (_candidate / "shelfvault" / "__init__.py").exists():
            sys.path.insert(0, str(_candidate))
            break
    except Exception:
        continue

from shelfvault import create_app, get_router  # noqa: E402
from shelfvault.sharding import shard_index  # noqa: E402


_TABLE_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Show which shard owns a key and how rows are spread across shards"
    )
    parser.add_argument(
        "keys",
        nargs="*",
        help="Record keys to resolve to a shard index.",
    )
    parser.add_argument(
        "--shard-count",
        type=int,
        default=None,
        help="Resolve keys offline against this shard count instead of the app config.",
    )
    parser.add_argument(
        "--table",
        default="books",
        help="Table to count per shard. Default: books.",
    )
    parser.add_argument(
        "--no-counts",
        action="store_true",
        help="Only resolve keys; do not connect to the shards.",
    )
    args = parser.parse_args()

    if args.shard_count is not None:
        if args.shard_count < 1:
            print("ERROR: --shard-count must be >= 1")
            return 2
        for key in args.keys:
            print(f"{key}\tshard {shard_index(key, args.shard_count)}")
        return 0

    if not _TABLE_RE.match(args.table):
        print(f"ERROR: invalid table name {args.table!r}")
        return 2

    app = create_app({"SHARD_CREATE_SCHEMA": False})
    router = get_router(app)

    for key in args.keys:
        print(f"{key}\tshard {router.shard_index_for(key)}")

    if args.no_counts:
        return 0

    total = 0
    failed = 0
    for index in range(router.shard_count):
        try:
            rows = router.shard(index).execute(f"SELECT COUNT(*) AS n FROM {args.table}")
        except Exception as exc:  # noqa: BLE001
            failed += 1
            print(f"shard {index}: ERROR {type(exc).__name__}: {exc}")
            continue
        count = int(rows[0]["n"]) if rows else 0
        total += count
        print(f"shard {index}: {count}")

    print(f"total {args.table}: {total} ({failed} shard(s) unavailable)")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
