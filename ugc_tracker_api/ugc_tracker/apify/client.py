from __future__ import annotations

import asyncio
import json
import logging
import random
import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional

import aiohttp

from ugc_tracker.settings import Settings

log = logging.getLogger(__name__)

RETRYABLE_EXC = (
    asyncio.TimeoutError,
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    ConnectionError,
)

TERMINAL_FAILURE_STATUSES = {"FAILED", "ABORTED", "TIMED-OUT"}

_ACTOR_NAME_RE = re.compile(r"^[a-zA-Z0-9._-]+~[a-zA-Z0-9._-]+$")
_ACTOR_UUID_RE = re.compile(r"^[a-f0-9]{8}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{4}-[a-f0-9]{12}$", re.IGNORECASE)


class ApifyError(Exception):
    """Apify API call failed (HTTP error, bad payload or missing credentials)."""

    def __init__(self, message: str, *, status: Optional[int] = None, error_type: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status
        self.error_type = error_type


class ApifyRunError(ApifyError):
    """A run ended in a failure state or never finished while we polled."""


def is_valid_actor_id(actor_id: str) -> bool:
    """Accepts `username~actor-name` or an actor UUID."""
    if not actor_id:
        return False
    return bool(_ACTOR_NAME_RE.match(actor_id) or _ACTOR_UUID_RE.match(actor_id))


def build_profile_scraper_input(usernames: Iterable[str], results_per_page: int = 10) -> Dict[str, Any]:
    """Input for the TikTok profile scraper: latest videos only, no media downloads."""
    return {
        "excludePinnedPosts": False,
        "profileScrapeSections": ["videos"],
        "profileSorting": "latest",
        "profiles": [f"@{u.strip().lstrip('@')}" for u in usernames],
        "proxyCountryCode": "None",
        "resultsPerPage": int(results_per_page),
        "scrapeRelatedVideos": False,
        "shouldDownloadAvatars": False,
        "shouldDownloadCovers": False,
        "shouldDownloadMusicCovers": False,
        "shouldDownloadSlideshowImages": False,
        "shouldDownloadSubtitles": False,
        "shouldDownloadVideos": False,
    }


async def _raise_for_apify_error(resp: aiohttp.ClientResponse, what: str) -> None:
    if resp.status < 400:
        return
    body = await resp.text()
    error_type: Optional[str] = None
    message = body
    try:
        parsed = json.loads(body)
    except ValueError:
        parsed = None
    if isinstance(parsed, dict):
        err = parsed["error"] if isinstance(parsed.get("error"), dict) else parsed
        error_type = err.get("type")
        message = err.get("message") or body
    raise ApifyError(f"{what} failed: {message}", status=resp.status, error_type=error_type)


async def _read_json(resp: aiohttp.ClientResponse, what: str) -> Any:
    try:
        return await resp.json(content_type=None)
    except ValueError as e:
        raise ApifyError(f"{what}: invalid JSON response ({e})", status=resp.status) from e


@dataclass(frozen=True)
class ApifyAPI:
    token: str
    base_url: str = "https://api.apify.com/v2"
    poll_interval: float = 1.0
    max_polls: int = 60
    request_attempts: int = 3
    timeout_total: float = 60.0

    @staticmethod
    def from_settings(settings: Settings) -> "ApifyAPI":
        return ApifyAPI(
            token=settings.apify_token,
            base_url=settings.apify_base_url.rstrip("/"),
            poll_interval=settings.apify_poll_interval_seconds,
            max_polls=settings.apify_max_polls,
            request_attempts=max(1, settings.request_attempts),
        )

    def _headers(self) -> Dict[str, str]:
        if not self.token:
            raise ApifyError("APIFY_TOKEN is not configured")
        return {"Authorization": f"Bearer {self.token}"}

    def _session(self) -> aiohttp.ClientSession:
        return aiohttp.ClientSession(
            headers=self._headers(),
            timeout=aiohttp.ClientTimeout(total=self.timeout_total),
        )

    # ---- starting runs (never retried: a lost response may still have started a run) ----
    async def _start_run(self, path: str, run_input: Optional[Dict[str, Any]], what: str) -> Dict[str, Any]:
        async with self._session() as session:
            async with session.post(f"{self.base_url}{path}", json=run_input or {}) as resp:
                await _raise_for_apify_error(resp, what)
                payload = await _read_json(resp, what)

        run = payload.get("data") if isinstance(payload, dict) and isinstance(payload.get("data"), dict) else payload
        if not isinstance(run, dict) or not run.get("id"):
            raise ApifyError(f"{what}: response has no run id", status=200)
        log.info("%s: run started id=%s status=%s", what, run.get("id"), run.get("status"))
        return run

    async def start_task_run(self, task_id: str, run_input: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._start_run(f"/actor-tasks/{task_id}/runs", run_input, f"start task {task_id}")

    async def start_actor_run(self, actor_id: str, run_input: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self._start_run(f"/acts/{actor_id}/runs", run_input, f"start actor {actor_id}")

    # ---- idempotent reads ----
    async def _get_json_with_retry(self, session: aiohttp.ClientSession, url: str, *, params: Optional[Dict[str, str]] = None) -> Any:
        last_exc: Optional[BaseException] = None

        for attempt in range(1, self.request_attempts + 1):
            try:
                async with session.get(url, params=params) as resp:
                    await _raise_for_apify_error(resp, f"GET {url}")
                    return await _read_json(resp, f"GET {url}")

            except RETRYABLE_EXC as e:
                last_exc = e
                backoff = min(2 ** (attempt - 1), 30) * self.poll_interval + random.random() * self.poll_interval
                log.warning(
                    "apify GET error (url=%s attempt=%s/%s sleep=%.2fs): %r",
                    url,
                    attempt,
                    self.request_attempts,
                    backoff,
                    e,
                )
                if attempt < self.request_attempts:
                    await asyncio.sleep(backoff)

        assert last_exc is not None
        raise last_exc

    async def wait_for_run(self, run_id: str) -> Dict[str, Any]:
        """Poll a run until SUCCEEDED; failure states and poll exhaustion raise ApifyRunError."""
        async with self._session() as session:
            for attempt in range(1, self.max_polls + 1):
                await asyncio.sleep(self.poll_interval)

                payload = await self._get_json_with_retry(session, f"{self.base_url}/actor-runs/{run_id}")
                run = payload.get("data") if isinstance(payload, dict) else None
                if not isinstance(run, dict):
                    raise ApifyError(f"Run {run_id}: unexpected status payload", status=200)
                status = str(run.get("status") or "")
                log.debug("run %s status=%s (poll %s/%s)", run_id, status, attempt, self.max_polls)

                if status == "SUCCEEDED":
                    return run
                if status in TERMINAL_FAILURE_STATUSES:
                    raise ApifyRunError(f"Run {run_id} failed with status: {status}", error_type=status)

        raise ApifyRunError(f"Run {run_id} timed out after {self.max_polls} polls")

    async def list_dataset_items(self, dataset_id: str) -> List[Dict[str, Any]]:
        async with self._session() as session:
            items = await self._get_json_with_retry(
                session,
                f"{self.base_url}/datasets/{dataset_id}/items",
                params={"format": "json"},
            )
        if not isinstance(items, list):
            raise ApifyError(f"Dataset {dataset_id}: expected a list of items")
        log.info("Fetched %s items from dataset %s", len(items), dataset_id)
        return [it for it in items if isinstance(it, dict)]

    async def run_task(self, task_id: str, run_input: Dict[str, Any]) -> List[Dict[str, Any]]:
        """Start a task run, wait for it, and return its default dataset items."""
        run = await self.start_task_run(task_id, run_input)
        if run.get("status") != "SUCCEEDED":
            run = await self.wait_for_run(str(run["id"]))

        dataset_id = run.get("defaultDatasetId")
        if not dataset_id:
            raise ApifyError(f"Run {run.get('id')} has no defaultDatasetId")
        return await self.list_dataset_items(str(dataset_id))
