from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Awaitable, Callable, TypeVar

from .clients.http_client import HttpTransport, RequestsTransport
from .config import SERVICE
from .errors import ValidationError
from .matching.matcher import TitleMatcher
from .models import IntegratedResult, SearchOptions
from .services.cache_service import CacheService, JsonFileStore
from .services.fallback_db import FallbackDatabase
from .services.integrated_service import IntegratedService
from .services.queue_service import QueueService
from .utils.utilities import ensure_columns, read_csv, write_csv

T = TypeVar("T")

RESULT_COLUMNS = {
    "HLTB_MainStory": "",
    "HLTB_MainExtra": "",
    "HLTB_Completionist": "",
    "HLTB_AllStyles": "",
    "HLTB_Source": "",
    "HLTB_Confidence": "",
    "HLTB_MatchedName": "",
}


def setup_logging(log_file: Path | None = None, *, debug: bool = False) -> None:
    """Configure logging to console and, optionally, a file."""
    formatter = logging.Formatter(
        "%(asctime)s.%(msecs)03d - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
    )
    level = logging.DEBUG if debug else logging.INFO

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)
        logging.info(f"Logging to file: {log_file}")

    # Silence verbose HTTP debug logs unless explicitly debugging
    http_level = logging.DEBUG if debug else logging.WARNING
    logging.getLogger("urllib3").setLevel(http_level)
    logging.getLogger("requests").setLevel(http_level)


_transport_factory: Callable[[], HttpTransport] = RequestsTransport


def _build_service(args: argparse.Namespace, transport: HttpTransport) -> IntegratedService:
    store = JsonFileStore(args.cache_file) if args.cache_file else None
    return IntegratedService(
        transport=transport,
        cache=CacheService(store),
        queue=QueueService(min_interval_s=args.min_interval),
        fallback=FallbackDatabase(community_url=args.community_url, transport=transport),
    )


async def _run_with_service(
    args: argparse.Namespace, fn: Callable[[IntegratedService], Awaitable[T]]
) -> tuple[IntegratedService, T]:
    transport = _transport_factory()
    service = _build_service(args, transport)
    try:
        return service, await fn(service)
    finally:
        await service.aclose()
        close = getattr(transport, "close", None)
        if callable(close):
            close()


def _options(args: argparse.Namespace) -> SearchOptions:
    return SearchOptions(
        skip_cache=bool(getattr(args, "skip_cache", False)),
        skip_api=bool(getattr(args, "skip_api", False)),
        skip_scraping=bool(getattr(args, "skip_scraper", False)),
        skip_fallback=bool(getattr(args, "skip_fallback", False)),
        timeout_s=getattr(args, "timeout", None),
        platform=getattr(args, "platform", None),
    )


def _fmt_hours(value: float | None) -> str:
    return "--" if value is None else f"{value:g}h"


def _print_result(title: str, result: IntegratedResult | None, as_json: bool) -> None:
    if as_json:
        print(json.dumps({"title": title, "result": result.to_dict() if result else None}))
        return
    if result is None:
        print(f"{title}: no data")
        return
    if result.skip_reason:
        print(f"{title}: skipped ({result.skip_reason})")
        return
    t = result.times
    print(
        f"{title} -> {result.matched_name or title} "
        f"[{result.source.value}, {result.confidence.value}, {result.retrieval_ms:.0f}ms]\n"
        f"  main story:    {_fmt_hours(t.main_story)}\n"
        f"  main + extra:  {_fmt_hours(t.main_extra)}\n"
        f"  completionist: {_fmt_hours(t.completionist)}\n"
        f"  all styles:    {_fmt_hours(t.all_styles)}"
    )


# ----------------------------
# Commands
# ----------------------------


async def _lookup(args: argparse.Namespace) -> int:
    service, result = await _run_with_service(
        args, lambda s: s.get_game_data(args.title, args.app_id, _options(args))
    )
    _print_result(args.title, result, args.json)
    logging.debug(f"[RESOLVER] {service.format_stats()}")
    return 0 if result is not None else 1


async def _batch(args: argparse.Namespace) -> int:
    df = read_csv(args.input)
    if args.title_col not in df.columns:
        raise SystemExit(f"Column {args.title_col!r} not found in {args.input}")
    df = ensure_columns(df, RESULT_COLUMNS)
    items: list[tuple[str, str | None]] = []
    for _, row in df.iterrows():
        app_id = str(row.get(args.app_id_col, "") or "").strip() if args.app_id_col else ""
        items.append((str(row[args.title_col] or ""), app_id or None))

    service, results = await _run_with_service(
        args, lambda s: s.batch_fetch(items, _options(args))
    )

    for idx, result in zip(df.index, results):
        if result is None:
            continue
        for col, value in (
            ("HLTB_MainStory", result.times.main_story),
            ("HLTB_MainExtra", result.times.main_extra),
            ("HLTB_Completionist", result.times.completionist),
            ("HLTB_AllStyles", result.times.all_styles),
        ):
            df.at[idx, col] = "" if value is None else str(value)
        df.at[idx, "HLTB_Source"] = result.source.value
        df.at[idx, "HLTB_Confidence"] = result.confidence.value
        df.at[idx, "HLTB_MatchedName"] = result.matched_name or ""
    write_csv(df, args.output)
    found = sum(1 for r in results if r is not None)
    logging.info(f"[RESOLVER] Batch done: {found}/{len(results)} resolved -> {args.output}")
    logging.info(f"[RESOLVER] {service.format_stats()}")
    return 0


def _match(args: argparse.Namespace) -> int:
    matcher = TitleMatcher()
    candidates = [{"name": c} for c in args.candidates]
    if args.details:
        print(json.dumps(matcher.match_details(args.title, candidates), indent=2))
        return 0
    result = matcher.find_best_match(args.title, candidates)
    if result is None:
        print("no match")
        return 1
    name = result.candidate["name"] if result.candidate else None
    print(
        json.dumps(
            {
                "match": name,
                "method": result.method.value,
                "confidence": round(result.confidence, 4),
                "reason": result.reason,
            }
        )
    )
    return 0


def _fallback(args: argparse.Namespace) -> int:
    db = FallbackDatabase()
    if args.action == "stats":
        print(json.dumps(db.get_stats(), indent=2))
        return 0
    if args.path is None:
        raise SystemExit(f"fallback {args.action} needs a PATH")
    path = Path(args.path)
    if args.action == "export":
        n = db.export_csv(path) if path.suffix.lower() == ".csv" else db.export_json(path)
        logging.info(f"[FALLBACK] Exported {n} games to {path}")
        return 0
    n = db.import_csv(path) if path.suffix.lower() == ".csv" else db.import_json(path)
    logging.info(f"[FALLBACK] Imported {n} games from {path}; {db.format_stats()}")
    return 0


async def _cache(args: argparse.Namespace) -> int:
    if not args.cache_file:
        raise SystemExit("cache commands need --cache-file")
    cache = CacheService(JsonFileStore(args.cache_file))
    if args.action == "clear":
        await cache.clear()
        logging.info(f"[CACHE] Cleared {args.cache_file}")
    elif args.action == "cleanup":
        removed = await cache.cleanup_expired()
        logging.info(f"[CACHE] Removed {removed} expired entries")
    else:
        print(json.dumps(await cache.get_stats(), indent=2))
    return 0


def main(argv: list[str] | None = None) -> int:
    argv = list(sys.argv[1:] if argv is None else argv)

    parser = argparse.ArgumentParser(description="Resolve game titles to completion times")
    sub = parser.add_subparsers(dest="command", required=True)

    p_common = argparse.ArgumentParser(add_help=False)
    p_common.add_argument(
        "--cache-file", type=Path, help="Persist the result cache to this JSON file"
    )
    p_common.add_argument(
        "--community-url", help="Community dataset URL merged into the fallback DB"
    )
    p_common.add_argument(
        "--min-interval",
        type=float,
        default=None,
        help="Minimum seconds between outbound requests (default: 1.0)",
    )
    p_common.add_argument("--log-file", type=Path, help="Also write logs to this file")
    p_common.add_argument(
        "--debug", action="store_true", help="Enable DEBUG logging (default: INFO)"
    )

    p_tiers = argparse.ArgumentParser(add_help=False)
    p_tiers.add_argument("--skip-cache", action="store_true")
    p_tiers.add_argument("--skip-api", action="store_true")
    p_tiers.add_argument("--skip-scraper", action="store_true")
    p_tiers.add_argument("--skip-fallback", action="store_true")
    p_tiers.add_argument(
        "--timeout",
        type=float,
        default=None,
        help=f"Overall per-title timeout in seconds (default: {SERVICE.overall_timeout_s:g})",
    )
    p_tiers.add_argument("--platform", help="Platform filter for the API search")

    p_lookup = sub.add_parser("lookup", help="Resolve one title", parents=[p_common, p_tiers])
    p_lookup.add_argument("title")
    p_lookup.add_argument("--app-id", help="Storefront app id (digits)")
    p_lookup.add_argument("--json", action="store_true", help="Print the result as JSON")

    p_batch = sub.add_parser(
        "batch", help="Resolve every title in a CSV", parents=[p_common, p_tiers]
    )
    p_batch.add_argument("input", type=Path, help="Input CSV")
    p_batch.add_argument("output", type=Path, help="Output CSV with HLTB_* columns added")
    p_batch.add_argument("--title-col", default="Name", help="Title column (default: Name)")
    p_batch.add_argument("--app-id-col", default=None, help="Optional app id column")

    p_match = sub.add_parser(
        "match", help="Match a title against candidate names offline", parents=[p_common]
    )
    p_match.add_argument("title")
    p_match.add_argument("candidates", nargs="+")
    p_match.add_argument("--details", action="store_true", help="Print every score")

    p_fallback = sub.add_parser(
        "fallback", help="Inspect or maintain the fallback database", parents=[p_common]
    )
    p_fallback.add_argument("action", choices=["stats", "export", "import"])
    p_fallback.add_argument("path", nargs="?", default=None, help="JSON or CSV file")

    p_cache = sub.add_parser(
        "cache", help="Inspect or maintain the result cache", parents=[p_common]
    )
    p_cache.add_argument("action", choices=["stats", "clear", "cleanup"])

    ns = parser.parse_args(argv)
    setup_logging(ns.log_file, debug=ns.debug)

    try:
        if ns.command == "lookup":
            return asyncio.run(_lookup(ns))
        if ns.command == "batch":
            return asyncio.run(_batch(ns))
        if ns.command == "match":
            return _match(ns)
        if ns.command == "fallback":
            return _fallback(ns)
        return asyncio.run(_cache(ns))
    except ValidationError as e:
        logging.error(f"Invalid input ({e.field}): {e.message}")
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
