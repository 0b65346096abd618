from __future__ import annotations

from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional

from ugc_tracker.db.repo import Repo, format_db_ts

ACTIVITY_DAYS = 7

def day_keys(now: datetime, days: int) -> List[str]:
    """YYYY-MM-DD strings for the `days` days ending today, oldest first."""
    today = now.date()
    return [(today - timedelta(days=i)).isoformat() for i in range(days - 1, -1, -1)]

def fill_missing_days(rows: List[Dict[str, Any]], keys: List[str]) -> List[Dict[str, Any]]:
    by_date = {str(r["date"]): int(r["views"] or 0) for r in rows}
    return [{"date": k, "views": by_date.get(k, 0)} for k in keys]

def _daily_views(repo: Repo, platform: str, since: Optional[str]) -> List[Dict[str, Any]]:
    where = ["p.platform = ?"]
    params: List[Any] = [platform]
    if since is not None:
        where.append("p.published_at >= ?")
        params.append(since)
    rows = repo.conn().execute(
        f"""
        SELECT DATE(p.published_at) AS date, COALESCE(SUM(lps.views), 0) AS views
        FROM posts p
        LEFT JOIN latest_post_stats lps ON lps.post_id = p.id
        WHERE {' AND '.join(where)}
        GROUP BY DATE(p.published_at)
        ORDER BY date
        """,
        tuple(params),
    ).fetchall()
    return [dict(r) for r in rows]

def _all_time_keys(rows: List[Dict[str, Any]], now: datetime) -> List[str]:
    days = 30
    dated = [r["date"] for r in rows if r.get("date")]
    if dated:
        first = date.fromisoformat(min(dated))
        days = max(days, (now.date() - first).days + 1)
    return day_keys(now, days)

def _totals(repo: Repo, platform: str) -> Dict[str, int]:
    posts = repo.conn().execute(
        "SELECT COUNT(*) AS c FROM posts WHERE platform = ?", (platform,)
    ).fetchone()["c"]
    creators = repo.conn().execute(
        "SELECT COUNT(*) AS c FROM creators WHERE platform = ? AND is_active = 1", (platform,)
    ).fetchone()["c"]
    sums = repo.conn().execute(
        """
        SELECT COALESCE(SUM(lps.views), 0) AS total_views, COALESCE(SUM(lps.likes), 0) AS total_likes
        FROM posts p
        LEFT JOIN latest_post_stats lps ON lps.post_id = p.id
        WHERE p.platform = ?
        """,
        (platform,),
    ).fetchone()
    return {
        "totalPosts": int(posts or 0),
        "totalCreators": int(creators or 0),
        "totalViews": int(sums["total_views"] or 0),
        "totalLikes": int(sums["total_likes"] or 0),
    }

def _top_posts(repo: Repo, platform: str, since: str) -> List[Dict[str, Any]]:
    rows = repo.conn().execute(
        """
        SELECT
          p.id, p.caption, p.post_url, p.thumbnail_url, p.published_at,
          c.username, c.display_name,
          lps.views, lps.likes, lps.comments, lps.shares, lps.saves
        FROM posts p
        JOIN creators c ON c.id = p.creator_id
        LEFT JOIN latest_post_stats lps ON lps.post_id = p.id
        WHERE p.platform = ? AND p.published_at >= ?
        ORDER BY COALESCE(lps.views, 0) DESC, p.id ASC
        """,
        (platform, since),
    ).fetchall()
    return [dict(r) for r in rows]

def _creator_stats(repo: Repo, platform: str, since: str, now: datetime) -> List[Dict[str, Any]]:
    creators = repo.conn().execute(
        """
        SELECT
          c.id, c.username, c.display_name,
          COUNT(p.id) AS post_count,
          COALESCE(SUM(lps.views), 0) AS total_views,
          COALESCE(SUM(lps.likes), 0) AS total_likes,
          COALESCE(AVG(lps.views), 0) AS avg_views
        FROM creators c
        LEFT JOIN posts p ON p.creator_id = c.id AND p.platform = ?
        LEFT JOIN latest_post_stats lps ON lps.post_id = p.id
        WHERE c.platform = ? AND c.is_active = 1
        GROUP BY c.id, c.username, c.display_name
        ORDER BY total_views DESC, c.id ASC
        """,
        (platform, platform),
    ).fetchall()

    per_day = repo.conn().execute(
        """
        SELECT creator_id, DATE(published_at) AS post_date, COUNT(*) AS c
        FROM posts
        WHERE platform = ? AND published_at >= ?
        GROUP BY creator_id, post_date
        """,
        (platform, since),
    ).fetchall()
    counts: Dict[int, Dict[str, int]] = {}
    for r in per_day:
        counts.setdefault(int(r["creator_id"]), {})[str(r["post_date"])] = int(r["c"])

    recent_views = repo.conn().execute(
        """
        SELECT p.creator_id, COALESCE(SUM(lps.views), 0) AS views
        FROM posts p
        LEFT JOIN latest_post_stats lps ON lps.post_id = p.id
        WHERE p.platform = ? AND p.published_at >= ?
        GROUP BY p.creator_id
        """,
        (platform, since),
    ).fetchall()
    views_7d = {int(r["creator_id"]): int(r["views"] or 0) for r in recent_views}

    keys = day_keys(now, ACTIVITY_DAYS)
    out: List[Dict[str, Any]] = []
    for c in creators:
        d = dict(c)
        daily = counts.get(int(d["id"]), {})
        d["activity"] = [{"date": k, "count": daily.get(k, 0)} for k in keys]
        d["total_views_7_days"] = views_7d.get(int(d["id"]), 0)
        out.append(d)
    return out

def dashboard_stats(repo: Repo, *, now: datetime, platform: str = "tiktok") -> Dict[str, Any]:
    since_7 = format_db_ts(now - timedelta(days=7))
    since_30 = format_db_ts(now - timedelta(days=30))

    all_time = _daily_views(repo, platform, None)

    data = _totals(repo, platform)
    data["topPosts"] = _top_posts(repo, platform, since_7)
    data["creatorStats"] = _creator_stats(repo, platform, since_7, now)
    data["dailyViews"] = {
        "last7Days": fill_missing_days(_daily_views(repo, platform, since_7), day_keys(now, 7)),
        "last30Days": fill_missing_days(_daily_views(repo, platform, since_30), day_keys(now, 30)),
        "allTime": fill_missing_days(all_time, _all_time_keys(all_time, now)),
    }
    return data

def top_video_for_date(repo: Repo, day: date, *, platform: str = "tiktok") -> Optional[Dict[str, Any]]:
    row = repo.conn().execute(
        """
        SELECT
          p.id, p.caption, p.post_url, p.published_at,
          c.username, c.display_name,
          lps.views, lps.likes, lps.comments, lps.shares
        FROM posts p
        JOIN creators c ON c.id = p.creator_id
        JOIN latest_post_stats lps ON lps.post_id = p.id
        WHERE p.platform = ? AND DATE(p.published_at) = ?
        ORDER BY lps.views DESC, p.id ASC
        LIMIT 1
        """,
        (platform, day.isoformat()),
    ).fetchone()
    return dict(row) if row else None
