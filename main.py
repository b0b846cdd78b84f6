#!/usr/bin/env python3
"""
Feed Ingestion command line

Runs the acquisition engine against the sources configured in feeds.yaml:
- fetch:    fetch every (or selected) source and print normalized articles as JSON lines
- sources:  list configured sources and the strategy each one uses
- validate: run the subscription validation fetch for one source
- status:   print the effective configuration summary
"""

import argparse
import asyncio
import json
import sys
from typing import Dict, List, Optional, Tuple

from config import config, get_logger
from errors import ConfigurationError, IngestError
from fetcher import FeedFetcher
from interfaces import MemoryFeedStore, RSSHubClient
from models import FeedSource, source_from_dict
from telemetry import init_telemetry, trace_span

# Module-specific logger
logger = get_logger("cli")
init_telemetry("feed-ingest-cli")


def load_sources(only_slugs: Optional[List[str]] = None) -> List[Tuple[str, FeedSource]]:
    """Build typed sources from feeds.yaml, skipping entries that do not validate."""
    sources = []
    for index, (slug, raw) in enumerate(config.FEED_SOURCES.items(), start=1):
        if only_slugs and slug not in only_slugs:
            continue
        try:
            sources.append((slug, source_from_dict(raw, feed_id=raw.get('id') or index)))
        except ConfigurationError as e:
            logger.warning(f"Skipping feed {slug}: {e}")
    return sources


class IngestRunner:
    """Wires the fetcher to an in-memory store for command line use."""

    def __init__(self, settings: Optional[Dict[str, str]] = None) -> None:
        self.store = MemoryFeedStore(settings)
        self.fetcher = FeedFetcher(store=self.store, rsshub=RSSHubClient())

    @trace_span(
        "cli_fetch",
        tracer_name="cli",
        attr_from_args=lambda self, only_slugs=None, priority=False: {
            "feed.only_slugs": ",".join(only_slugs) if only_slugs else "",
            "fetch.priority": priority,
        },
    )
    async def fetch(self, only_slugs: Optional[List[str]] = None, priority: bool = False) -> bool:
        sources = load_sources(only_slugs)
        if not sources:
            logger.warning("No feeds to fetch")
            return False
        logger.info(f"📡 Fetching {len(sources)} feeds")
        try:
            results = await self.fetcher.fetch_many(sources, priority=priority)
        finally:
            await self.fetcher.close()

        failures = 0
        for slug, result, error in results:
            if error is not None:
                failures += 1
                continue
            for article in result.articles:
                record = article.to_dict()
                record['feed'] = slug
                print(json.dumps(record, ensure_ascii=False))
            if result.last_seen_uid is not None:
                logger.info(f"Feed {slug} last seen UID is now {result.last_seen_uid}")
        logger.info(f"✅ Fetched {len(results) - failures} of {len(results)} feeds")
        return failures == 0

    async def validate(self, slug: str) -> bool:
        sources = load_sources([slug])
        if not sources:
            logger.error(f"Unknown or invalid feed: {slug}")
            return False
        _, source = sources[0]
        try:
            feed = await self.fetcher.fetch(source)
        except IngestError as e:
            logger.error(f"❌ Validation failed for {slug}: {e}")
            return False
        finally:
            await self.fetcher.close()
        print(json.dumps({
            'feed': slug,
            'kind': source.kind.value,
            'title': feed.title,
            'link': feed.link,
            'items': len(feed.items),
        }, ensure_ascii=False))
        return True


def print_sources() -> None:
    for slug, source in load_sources():
        print(f"{slug}\t{source.kind.value}\t{source.url}")


def main():
    """Main entry point."""

    parser = argparse.ArgumentParser(description='Feed acquisition and normalization engine')
    parser.add_argument('mode', choices=['fetch', 'sources', 'validate', 'status'],
                        help='Operation mode')
    parser.add_argument('slug', nargs='?',
                        help='Feed slug (validate mode)')
    parser.add_argument('--only', nargs='+', metavar='SLUG',
                        help='Only fetch these feed slugs')
    parser.add_argument('--priority', action='store_true',
                        help='Use the shorter interactive timeouts')

    args = parser.parse_args()

    try:
        if args.mode == 'fetch':
            success = asyncio.run(IngestRunner().fetch(only_slugs=args.only, priority=args.priority))
            sys.exit(0 if success else 1)

        elif args.mode == 'sources':
            print_sources()

        elif args.mode == 'validate':
            if not args.slug:
                parser.error("validate requires a feed slug")
            success = asyncio.run(IngestRunner().validate(args.slug))
            sys.exit(0 if success else 1)

        elif args.mode == 'status':
            print(json.dumps(config.get_config_summary(), indent=2))

    except KeyboardInterrupt:
        logger.info("👋 Shutting down")
    except Exception as e:
        logger.error(f"💥 Unexpected error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
