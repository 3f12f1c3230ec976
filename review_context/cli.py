#!/usr/bin/env python3
"""
review-context: change-aware context windowing for code review.

Decides, per changed file, how much of the file a language-model reviewer
needs (diff only, surrounding window, enclosing blocks, summary, or the
whole file), extracts that slice, and caches the work between runs.

Usage:
    review-context                              # every file changed vs HEAD~1
    review-context src/app.ts src/util.py       # specific files
    review-context --baseline main --json       # machine-readable output
    review-context --cache-stats                # show cache statistics
"""

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from loguru import logger

from review_context import __version__
from review_context.modules.cache_store import CacheStats, ContentCache
from review_context.modules.config_loader import load_settings
from review_context.modules.context_windowing import ContextPipeline
from review_context.modules.errors import ConfigError
from review_context.modules.git_provider import GitProvider, VersionControl
from review_context.modules.schemas import ReviewContext, Settings


def setup_logging(verbose: bool = False, log_file: Optional[str] = None):
    """Configure logging with loguru."""
    logger.remove()  # Remove default handler

    # Console handler
    level = "DEBUG" if verbose else "INFO"
    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    # File handler
    if log_file:
        logger.add(
            log_file,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level="DEBUG",
            rotation="10 MB",
            retention="7 days",
        )


def _resolve_cache_dir(settings: Settings, target_dir: str) -> Settings:
    cache_dir = Path(settings.cache.cache_dir)
    if cache_dir.is_absolute():
        return settings
    cache = settings.cache.model_copy(update={"cache_dir": str(Path(target_dir) / cache_dir)})
    return settings.model_copy(update={"cache": cache})


def run_context(
    target_dir: str,
    settings: Settings,
    files: Optional[List[str]] = None,
    provider: Optional[VersionControl] = None,
) -> List[ReviewContext]:
    """Build review contexts for `files` (or every changed file) under `target_dir`."""
    provider = provider or GitProvider(target_dir)
    settings = _resolve_cache_dir(settings, target_dir)

    with ContentCache(settings.effective_cache_config()) as cache:
        pipeline = ContextPipeline(provider, settings.context, cache=cache)
        if files:
            results = pipeline.build_many(files)
        else:
            results = pipeline.build_changed()
        stats = cache.stats()

    logger.info(
        f"Built context for {len(results)} files "
        f"(cache: {stats.hits} hits, {stats.misses} misses, {stats.entry_count} entries)"
    )
    return results


def format_table(results: List[ReviewContext]) -> str:
    if not results:
        return "No changed files."

    width = max(len("FILE"), *(len(r.file_path) for r in results))
    rows = [f"{'FILE':<{width}}  {'STRATEGY':<15} {'RATIO':>6} {'LINES':>11} {'TOKENS':>7}"]
    for r in results:
        strategy = r.context.strategy.value
        if r.context.degraded:
            strategy += "*"
        lines = f"{r.context.extracted_line_count}/{r.context.original_line_count}"
        rows.append(
            f"{r.file_path:<{width}}  {strategy:<15} {r.analysis.change_ratio:>6.2f} {lines:>11} "
            f"{r.context.estimated_tokens:>7}"
        )
    if any(r.context.degraded for r in results):
        rows.append("* degraded from the selected strategy")
    return "\n".join(rows)


def format_stats(stats: CacheStats) -> str:
    return "\n".join(
        [
            f"Entries:     {stats.entry_count}",
            f"Size:        {stats.total_size_bytes} bytes",
            f"Hits:        {stats.hits}",
            f"Misses:      {stats.misses}",
            f"Hit rate:    {stats.hit_rate:.1%}",
            f"Evictions:   {stats.evictions}",
            f"Expirations: {stats.expirations}",
        ]
    )


def main(argv: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Change-aware context windowing for code review",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  review-context                          # All files changed vs HEAD~1
  review-context src/app.ts               # One file
  review-context --dir ../repo --json     # Another repository, JSON output
  review-context --cache-stats            # Cache statistics

Environment Variables:
  MAX_TOKENS_PER_FILE  - Token ceiling for full-file context (default 4000)
  CONTEXT_WINDOW_SIZE  - Lines around each change (default 20)
  ENABLE_SMART_CACHE   - Set to false to disable caching
  CACHE_STRATEGY       - lru | lfu | ttl
""",
    )

    parser.add_argument("files", nargs="*", help="Files to process (default: all changed files)")
    parser.add_argument(
        "--dir", "-d", type=str, default=".", help="Repository directory (default: current directory)"
    )
    parser.add_argument(
        "--config", "-c", type=str, default="config.yaml", help="Path to configuration file (default: config.yaml)"
    )
    parser.add_argument("--baseline", "-b", type=str, help="Revision to diff against (default: HEAD~1)")
    parser.add_argument("--json", action="store_true", help="Print full results as JSON")
    parser.add_argument("--cache-stats", action="store_true", help="Print cache statistics and exit")
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose/debug output")
    parser.add_argument("--log-file", type=str, help="Path to log file (optional)")
    parser.add_argument("--version", action="version", version=f"review-context {__version__}")

    args = parser.parse_args(argv)

    setup_logging(args.verbose, args.log_file)

    try:
        settings = load_settings(args.config)
    except ConfigError as e:
        logger.error(str(e))
        return 2

    if args.baseline:
        settings = settings.model_copy(
            update={"context": settings.context.model_copy(update={"baseline": args.baseline})}
        )

    if args.cache_stats:
        settings = _resolve_cache_dir(settings, args.dir)
        cache = ContentCache(settings.effective_cache_config())
        if cache.config.persist_to_disk:
            cache.load_snapshot()
        print(format_stats(cache.stats()))
        return 0

    try:
        results = run_context(args.dir, settings, files=args.files)
    except KeyboardInterrupt:
        logger.info("\nInterrupted by user")
        return 130
    except Exception as e:
        logger.exception(f"Fatal error: {e}")
        return 1

    if args.json:
        print(json.dumps([r.model_dump(mode="json") for r in results], indent=2))
    else:
        print(format_table(results))
    return 0


if __name__ == "__main__":
    sys.exit(main())
