"""
Command Line Interface for Debrid-Stream
Runs the server and offers one-shot resolution and cache maintenance commands.
"""

import argparse
import asyncio
import logging
import sys

logger = logging.getLogger(__name__)


def setup_logging(level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Debrid-Stream - debrid resolution and caching engine for torrent streams",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Start the server with a durable cache
  debrid-stream serve --port 7000 --cache-backend sqlite --cache-db /data/cache.db

  # Check a Real-Debrid API key
  debrid-stream check --api-key XXXX

  # Resolve one torrent file to a direct link
  debrid-stream resolve --api-key XXXX <info_hash> --file-index 0

  # Show which torrents are cached
  debrid-stream availability --api-key XXXX <hash> <hash>

  # Inspect or clean the durable cache
  debrid-stream cache stats --db debrid_cache.db
  debrid-stream cache purge --db debrid_cache.db

Environment Variables:
  HOST                  - Server bind address (default: 0.0.0.0)
  PORT                  - Server port (default: 7000)
  PROVIDER              - Debrid provider (default: realdebrid)
  LIMIT_MAX_CONCURRENT  - Concurrent resolutions (default: 20)
  LIMIT_QUEUE_SIZE      - Waiting resolutions before rejecting (default: 50)
  NO_CACHE              - Disable every cache (default: false)
  CACHE_BACKEND         - memory or sqlite (default: memory)
  CACHE_DB_PATH         - SQLite cache file (default: debrid_cache.db)
  CATALOG_FILE          - JSON list of torrent records for stream lists
  STATIC_BASE_URL       - Base URL of the placeholder videos
  LOG_LEVEL             - Logging level (default: INFO)
  LOG_FILE              - Log file path (enables rotation)
  LOG_FORMAT            - Log format: text or json (default: text)
        """,
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve command
    serve_parser = subparsers.add_parser("serve", help="Start the HTTP server")
    serve_parser.add_argument(
        "--host", "-H", default="0.0.0.0", help="Host to bind to"
    )
    serve_parser.add_argument(
        "--port", "-p", type=int, default=7000, help="Port to listen on"
    )
    serve_parser.add_argument(
        "--log-level", "-l", default="INFO", help="Log level"
    )
    serve_parser.add_argument(
        "--log-file", help="Log file path (enables rotation)"
    )
    serve_parser.add_argument(
        "--log-format", choices=["text", "json"], default="text",
        help="Log format: text or json"
    )
    serve_parser.add_argument(
        "--cache-backend", choices=["memory", "sqlite"], default="memory",
        help="Cache store backend"
    )
    serve_parser.add_argument(
        "--cache-db", default="debrid_cache.db", help="SQLite cache file"
    )
    serve_parser.add_argument(
        "--no-cache", action="store_true", help="Disable every cache"
    )
    serve_parser.add_argument(
        "--catalog-file", help="JSON list of torrent records for stream lists"
    )
    serve_parser.add_argument(
        "--reload", action="store_true", help="Enable auto-reload (dev mode)"
    )

    # Check command
    check_parser = subparsers.add_parser("check", help="Check a debrid API key")
    check_parser.add_argument("--api-key", "-k", required=True, help="Debrid API key")

    # Resolve command
    resolve_parser = subparsers.add_parser("resolve", help="Resolve a torrent file to a direct link")
    resolve_parser.add_argument("info_hash", help="Torrent info hash")
    resolve_parser.add_argument("--api-key", "-k", required=True, help="Debrid API key")
    resolve_parser.add_argument(
        "--file-index", "-f", type=int, help="0-based file index inside the torrent"
    )
    resolve_parser.add_argument(
        "--hint", help="Cached file ids, comma separated (e.g. 5,6)"
    )

    # Availability command
    availability_parser = subparsers.add_parser("availability", help="Show cached availability")
    availability_parser.add_argument("hashes", nargs="+", help="Info hashes, optionally hash:file_index")
    availability_parser.add_argument("--api-key", "-k", required=True, help="Debrid API key")

    # Cache command
    cache_parser = subparsers.add_parser("cache", help="Manage the durable cache")
    cache_subparsers = cache_parser.add_subparsers(dest="cache_command")

    cache_stats = cache_subparsers.add_parser("stats", help="Show cache statistics")
    cache_stats.add_argument("--db", default="debrid_cache.db", help="Database path")

    cache_clear = cache_subparsers.add_parser("clear", help="Clear cache entries")
    cache_clear.add_argument("--db", default="debrid_cache.db", help="Database path")
    cache_clear.add_argument(
        "--namespace", choices=["stream", "resolved", "availability"],
        help="Only clear one namespace"
    )

    cache_purge = cache_subparsers.add_parser("purge", help="Delete expired cache entries")
    cache_purge.add_argument("--db", default="debrid_cache.db", help="Database path")

    return parser


def main():
    """Main CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "serve":
        run_server(args)
    elif args.command == "check":
        asyncio.run(run_check(args))
    elif args.command == "resolve":
        asyncio.run(run_resolve(args))
    elif args.command == "availability":
        asyncio.run(run_availability(args))
    elif args.command == "cache" and args.cache_command:
        asyncio.run(run_cache(args))
    else:
        parser.print_help()
        sys.exit(1)


def run_server(args):
    """Run the HTTP server."""
    import os
    import uvicorn

    setup_logging(args.log_level)

    os.environ["HOST"] = args.host
    os.environ["PORT"] = str(args.port)
    os.environ["LOG_LEVEL"] = args.log_level
    os.environ["LOG_FORMAT"] = args.log_format
    os.environ["CACHE_BACKEND"] = args.cache_backend
    os.environ["CACHE_DB_PATH"] = args.cache_db
    os.environ["NO_CACHE"] = "true" if args.no_cache else "false"

    if args.log_file:
        os.environ["LOG_FILE"] = args.log_file
    if args.catalog_file:
        os.environ["CATALOG_FILE"] = args.catalog_file

    logger.info(f"Starting debrid-stream on {args.host}:{args.port}")
    logger.info(f"Cache: {'disabled' if args.no_cache else args.cache_backend}")

    uvicorn.run(
        "debrid_stream.server:app",
        host=args.host,
        port=args.port,
        reload=args.reload,
        log_level=args.log_level.lower(),
    )


async def run_check(args):
    """Check that the provider accepts an API key."""
    setup_logging("INFO")

    from .exceptions import AuthenticationError, ProviderError
    from .server import Settings, build_provider

    provider = build_provider(Settings())
    try:
        jobs = await provider.list_jobs(args.api_key, page=1, page_size=1)
        print(f"  API key accepted by {provider.key} ({len(jobs)} recent job(s) visible)")
    except AuthenticationError as e:
        print(f"  API key rejected: {e}")
        sys.exit(1)
    except ProviderError as e:
        print(f"  Provider request failed: {e}")
        sys.exit(1)
    finally:
        await provider.close()


async def run_resolve(args):
    """Resolve one torrent file."""
    setup_logging("INFO")

    from .exceptions import DebridStreamError
    from .resolver import PendingReason
    from .server import Settings, build_engine

    engine = build_engine(Settings(no_cache=True, cache_backend="memory"))
    await engine.initialize()
    try:
        result = await engine.resolve_stream(
            args.info_hash,
            args.file_index,
            args.api_key,
            cached_file_id_hint=args.hint,
        )
    except DebridStreamError as e:
        print(f"  Resolution failed: {e}")
        sys.exit(1)
    finally:
        await engine.close()

    if isinstance(result, PendingReason):
        print(f"  Not ready: {result.name.lower()}")
    else:
        print(result)


async def run_availability(args):
    """Show cached availability for hashes."""
    setup_logging("WARNING")

    from .exceptions import DebridStreamError
    from .server import Settings, build_engine, parse_descriptors

    engine = build_engine(Settings(no_cache=True, cache_backend="memory"))
    await engine.initialize()
    try:
        tagged = await engine.list_cached_availability(parse_descriptors(",".join(args.hashes)), args.api_key)
    except DebridStreamError as e:
        print(f"  Availability request failed: {e}")
        sys.exit(1)
    finally:
        await engine.close()

    print(f"{'Hash':<42} {'Cached':<8} {'URL':<60}")
    print("-" * 110)
    for info_hash, info in tagged.items():
        cached = "unknown" if info["cached"] is None else ("yes" if info["cached"] else "no")
        print(f"{info_hash:<42} {cached:<8} {info['url']:<60}")


async def run_cache(args):
    """Manage the durable cache."""
    import os

    if not os.path.exists(args.db):
        print(f"Database not found: {args.db}")
        sys.exit(1)

    from .storage import GLOBAL_KEY_PREFIX, SqliteCacheStore

    store = SqliteCacheStore(args.db)
    await store.initialize()

    try:
        if args.cache_command == "stats":
            stats = await store.get_stats()
            print("\n=== Cache Statistics ===")
            print(f"  entries: {stats['entries']}")
            for namespace, count in stats["namespaces"].items():
                print(f"  {namespace}: {count}")

        elif args.cache_command == "clear":
            prefix = f"{GLOBAL_KEY_PREFIX}|{args.namespace}" if args.namespace else ""
            count = await store.clear(prefix)
            print(f"Cleared {count} cache entries.")

        elif args.cache_command == "purge":
            count = await store.purge_expired()
            print(f"Purged {count} expired cache entries.")

    finally:
        await store.close()


if __name__ == "__main__":
    main()
