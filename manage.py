from __future__ import annotations

import argparse
import json
import logging
import sys
from typing import Any

from healthsync import settings
from healthsync.aggregation import AggregationEngine
from healthsync.db import Store
from healthsync.errors import HealthSyncError
from healthsync.imports import get_import_payload, import_stats
from healthsync.metrics import REALTIME_EXPORT_SOURCE
from healthsync.writer import DedupWriter, backfill_normalized_values


def _print(obj: Any) -> None:
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def cmd_init_db(store: Store, args: argparse.Namespace) -> int:
    store.init()
    print(f"initialized: {store.path}")
    return 0


def cmd_backfill_units(store: Store, args: argparse.Namespace) -> int:
    counts = backfill_normalized_values(store)
    _print(counts)
    return 0


def cmd_stats(store: Store, args: argparse.Namespace) -> int:
    _print(import_stats(store).model_dump(mode="json"))
    return 0


def cmd_replay(store: Store, args: argparse.Namespace) -> int:
    raw = get_import_payload(store, args.import_id)
    if raw is None:
        print(f"import {args.import_id} not found", file=sys.stderr)
        return 1
    result = DedupWriter(store).ingest(json.loads(raw), source=args.source)
    _print(result.model_dump(mode="json"))
    return 0


def cmd_query(store: Store, args: argparse.Namespace) -> int:
    engine = AggregationEngine(store)
    _print(
        engine.query(
            args.kind,
            days=args.days,
            start=args.start,
            end=args.end,
            granularity=args.granularity,
            limit=args.limit,
        )
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Maintenance commands for the health export database.")
    parser.add_argument("--db", default=None, help=f"sqlite path (default: DB_PATH, {settings.DB_PATH})")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="Create tables and indexes.").set_defaults(func=cmd_init_db)
    sub.add_parser(
        "backfill-units",
        help="Fill normalized_value (kJ -> kcal etc.) on rows stored without one.",
    ).set_defaults(func=cmd_backfill_units)
    sub.add_parser("stats", help="Import batch statistics.").set_defaults(func=cmd_stats)

    replay = sub.add_parser("replay", help="Re-ingest the stored payload of an import batch.")
    replay.add_argument("import_id", type=int)
    replay.add_argument("--source", default=REALTIME_EXPORT_SOURCE)
    replay.set_defaults(func=cmd_replay)

    query = sub.add_parser("query", help="Run an aggregation query and print the JSON result.")
    query.add_argument("kind")
    query.add_argument("--granularity", default=None)
    query.add_argument("--days", type=int, default=None)
    query.add_argument("--start", default=None)
    query.add_argument("--end", default=None)
    query.add_argument("--limit", type=int, default=None)
    query.set_defaults(func=cmd_query)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(level=settings.LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
    store = Store(args.db)
    try:
        return args.func(store, args)
    except HealthSyncError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 2


if __name__ == "__main__":
    sys.exit(main())
