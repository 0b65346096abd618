from __future__ import annotations

import asyncio
import logging
import sqlite3
from dataclasses import asdict, dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import aiohttp

from ugc_tracker.apify.client import ApifyAPI, ApifyError, build_profile_scraper_input
from ugc_tracker.apify.mappers import match_creator, normalize_item
from ugc_tracker.db.repo import Repo
from ugc_tracker.settings import Settings

log = logging.getLogger(__name__)

NO_CREATORS_MESSAGE = "No active TikTok creators found"


class ScraperAPI(Protocol):
    async def run_task(self, task_id: str, run_input: Dict[str, Any]) -> List[Dict[str, Any]]: ...


@dataclass
class SyncSummary:
    processed: int = 0
    errors: int = 0
    batches: int = 0
    creators: int = 0
    purged: Dict[str, int] = field(default_factory=dict)
    message: str = "Sync completed"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def _batches(items: List[Dict[str, Any]], size: int) -> List[List[Dict[str, Any]]]:
    return [items[i:i + size] for i in range(0, len(items), size)]


def _import_items(
    repo: Repo,
    items: List[Dict[str, Any]],
    batch: List[Dict[str, Any]],
    *,
    platform: str,
) -> tuple[int, int]:
    """Store one batch's items. Returns (processed, errors)."""
    processed = 0
    errors = 0
    for item in items:
        try:
            creator = match_creator(item, batch)
            if creator is None:
                log.error(
                    "Could not find creator for item id=%s authorMeta=%s webVideoUrl=%s",
                    item.get("id"),
                    item.get("authorMeta"),
                    item.get("webVideoUrl"),
                )
                continue

            normalized = normalize_item(item, int(creator["id"]), platform=platform)
            if normalized is None:
                log.error("Failed to normalize item id=%s", item.get("id"))
                continue
            post, stat = normalized

            post_id = repo.upsert_post(post)
            repo.insert_post_stat(post_id, stat)
            processed += 1
        except (sqlite3.Error, ValueError, TypeError, KeyError) as e:
            log.error("Error processing item id=%s: %r", item.get("id"), e)
            errors += 1

    repo.conn().commit()
    return processed, errors


async def sync_creators(
    *,
    settings: Settings,
    api: Optional[ScraperAPI] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
) -> SyncSummary:
    """Purge every active creator's data, then reload it from the scraper in batches."""
    repo = Repo(settings=settings)
    repo.ensure_schema()
    try:
        return await _sync(repo, settings=settings, api=api, sleep=sleep)
    finally:
        repo.close()


async def _sync(
    repo: Repo,
    *,
    settings: Settings,
    api: Optional[ScraperAPI],
    sleep: Callable[[float], Awaitable[Any]],
) -> SyncSummary:
    platform = settings.platform
    creators = repo.list_active_creators(platform)
    if not creators:
        log.info(NO_CREATORS_MESSAGE)
        return SyncSummary(message=NO_CREATORS_MESSAGE)

    log.info("Found %s active %s creators", len(creators), platform)
    api = api or ApifyAPI.from_settings(settings)

    purged = repo.purge_creator_data([int(c["id"]) for c in creators])
    log.info("Purged existing data for %s creators: %s", len(creators), purged)

    batches = _batches(creators, settings.sync_batch_size)
    summary = SyncSummary(creators=len(creators), batches=len(batches), purged=purged)
    log.info("Processing %s batches of creators", len(batches))

    for batch_index, batch in enumerate(batches):
        log.info("Processing batch %s/%s with %s creators", batch_index + 1, len(batches), len(batch))
        log_ids = [repo.create_sync_log(int(c["id"]), batch_index, platform=platform) for c in batch]

        try:
            items = await api.run_task(
                settings.apify_actor_id,
                build_profile_scraper_input(
                    [str(c["username"]) for c in batch],
                    results_per_page=settings.apify_results_per_page,
                ),
            )
        except (ApifyError, aiohttp.ClientError, OSError, asyncio.TimeoutError) as e:
            log.error("Batch %s failed: %r", batch_index + 1, e)
            repo.finish_sync_logs(log_ids, status="error", error=str(e) or repr(e))
            summary.errors += len(batch)
        else:
            processed, errors = _import_items(repo, items, batch, platform=platform)
            summary.processed += processed
            summary.errors += errors

            if processed == 0 and items:
                message = f"Normalization failed - {len(items)} items received but 0 processed"
                log.error("Batch %s: %s", batch_index + 1, message)
                repo.finish_sync_logs(log_ids, status="error", items_received=len(items), error=message)
                summary.errors += len(batch)
            else:
                repo.finish_sync_logs(
                    log_ids,
                    status="success",
                    items_received=len(items),
                    records_processed=processed,
                )
                log.info("Batch %s completed: %s processed, %s errors", batch_index + 1, processed, errors)

        if batch_index < len(batches) - 1 and settings.sync_batch_sleep_seconds > 0:
            log.info("Sleeping %.1fs before next batch", settings.sync_batch_sleep_seconds)
            await sleep(settings.sync_batch_sleep_seconds)

    log.info("Sync completed: %s items processed, %s errors", summary.processed, summary.errors)
    return summary
