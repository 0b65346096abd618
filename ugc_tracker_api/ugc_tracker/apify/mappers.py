from __future__ import annotations

import logging
import re
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from ugc_tracker.db.repo import engagement_rate, format_db_ts

log = logging.getLogger(__name__)

_INT_PREFIX_RE = re.compile(r"^\s*([+-]?\d+)")
_URL_HANDLE_RE = re.compile(r"@([^/?#]+)")

def _first(*values: Any) -> Any:
    """First truthy value, or None."""
    for v in values:
        if v:
            return v
    return None

def _nested(obj: Any, *keys: str) -> Any:
    for k in keys:
        if not isinstance(obj, dict):
            return None
        obj = obj.get(k)
    return obj

def to_int(value: Any) -> int:
    """Lenient integer coercion: '12abc' -> 12, '3.9' -> 3, 'abc'/None -> 0."""
    if value is None or isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if value == value and abs(value) != float("inf") else 0
    m = _INT_PREFIX_RE.match(str(value))
    return int(m.group(1)) if m else 0

def parse_published_at(item: Dict[str, Any], now: Optional[datetime] = None) -> str:
    """createTimeISO, else createTime (epoch seconds), else now. Raises ValueError if unparsable."""
    iso = item.get("createTimeISO")
    if iso:
        dt = datetime.fromisoformat(str(iso).strip().replace("Z", "+00:00"))
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=timezone.utc)
        return format_db_ts(dt)

    ts = item.get("createTime")
    if ts:
        return format_db_ts(datetime.fromtimestamp(float(ts), tz=timezone.utc))

    return format_db_ts(now or datetime.now(timezone.utc))

def normalize_item(
    item: Dict[str, Any],
    creator_id: int,
    *,
    platform: str = "tiktok",
    now: Optional[datetime] = None,
) -> Optional[Tuple[Dict[str, Any], Dict[str, Any]]]:
    """Map one scraper item into (post_row, stat_row); None when it cannot be stored."""
    post_id = _first(item.get("id"), item.get("itemId"), _nested(item, "video", "id"))
    if not post_id:
        log.error("Missing post id in item: authorMeta=%s", item.get("authorMeta"))
        return None

    url = _first(item.get("url"), item.get("shareUrl"), item.get("webVideoUrl"))
    if not url:
        log.error("Missing URL in item id=%s webVideoUrl=%s", post_id, item.get("webVideoUrl"))
        return None

    try:
        published_at = parse_published_at(item, now=now)
    except (ValueError, TypeError, OverflowError, OSError) as e:
        log.error("Bad publish time in item id=%s: %r", post_id, e)
        return None

    stats = item.get("stats") if isinstance(item.get("stats"), dict) else item
    views = to_int(_first(stats.get("playCount"), stats.get("play_count"), stats.get("views")))
    likes = to_int(_first(stats.get("diggCount"), stats.get("digg_count"), stats.get("likes")))
    comments = to_int(_first(stats.get("commentCount"), stats.get("comment_count"), stats.get("comments")))
    shares = to_int(_first(stats.get("shareCount"), stats.get("share_count"), stats.get("shares")))

    thumbnail = _first(
        item.get("thumbnailUrl"),
        item.get("cover"),
        _nested(item, "video", "cover"),
        _nested(item, "videoMeta", "coverUrl"),
    ) or ""

    post = {
        "creator_id": creator_id,
        "external_id": str(post_id),
        "platform": platform,
        "content_type": "video",
        "caption": _first(item.get("text"), item.get("desc")) or "",
        "media_url": str(url),
        "thumbnail_url": str(thumbnail),
        "post_url": str(url),
        "published_at": published_at,
    }
    stat = {
        "likes": likes,
        "comments": comments,
        "shares": shares,
        "views": views,
        "saves": 0,
        "engagement_rate": engagement_rate(views, likes, comments, shares),
    }
    return post, stat

def match_creator(item: Dict[str, Any], creators: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Find the tracked creator an item belongs to.

    Order: authorMeta.name, then the @handle in webVideoUrl, then username/userId.
    """
    by_username = {str(c["username"]): c for c in creators}

    author = _nested(item, "authorMeta", "name")
    if author and str(author) in by_username:
        return by_username[str(author)]

    web_url = item.get("webVideoUrl")
    if web_url:
        m = _URL_HANDLE_RE.search(str(web_url))
        if m and m.group(1) in by_username:
            return by_username[m.group(1)]

    username = item.get("username")
    user_id = item.get("userId")
    for c in creators:
        if username and c["username"] == username:
            return c
        if user_id and c.get("external_id") and str(c["external_id"]) == str(user_id):
            return c
    return None
