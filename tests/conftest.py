from __future__ import annotations

import dataclasses
from datetime import datetime
from typing import Any, Dict, Optional

import pytest

from ugc_tracker.db.repo import Repo, engagement_rate, format_db_ts
from ugc_tracker.settings import Settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    return dataclasses.replace(
        Settings.from_env(),
        db_url=f"sqlite:///{tmp_path / 'ugc.db'}",
        data_dir=tmp_path / "data",
        apify_token="apify_api_test_token_123",
        apify_actor_id="clockworks~tiktok-scraper",
        apify_base_url="http://apify.invalid/v2",
        apify_poll_interval_seconds=0.0,
        apify_max_polls=3,
        request_attempts=2,
        platform="tiktok",
        sync_batch_size=10,
        sync_batch_sleep_seconds=0.0,
        cron_secret="cron-secret",
        api_key="",
        jwt_secret="test-secret",
        jwt_expires_days=7,
        payment_post_target=60,
        payment_amount=500.0,
        daily_post_target=2,
        cors_origins="",
        static_dir=None,
    )


@pytest.fixture
def repo(settings):
    r = Repo(settings=settings)
    r.ensure_schema()
    yield r
    r.close()


def seed_post(
    repo: Repo,
    creator_id: int,
    external_id: str,
    *,
    published_at: datetime,
    views: int = 0,
    likes: int = 0,
    comments: int = 0,
    shares: int = 0,
    caption: Optional[str] = None,
) -> int:
    post: Dict[str, Any] = {
        "creator_id": creator_id,
        "external_id": external_id,
        "platform": "tiktok",
        "content_type": "video",
        "caption": caption or f"post {external_id}",
        "media_url": f"https://www.tiktok.com/video/{external_id}",
        "thumbnail_url": "",
        "post_url": f"https://www.tiktok.com/video/{external_id}",
        "published_at": format_db_ts(published_at),
    }
    post_id = repo.upsert_post(post)
    repo.insert_post_stat(
        post_id,
        {
            "views": views,
            "likes": likes,
            "comments": comments,
            "shares": shares,
            "engagement_rate": engagement_rate(views, likes, comments, shares),
        },
    )
    repo.conn().commit()
    return post_id
