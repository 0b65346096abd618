"""Creator payment rules.

A creator is paid `payment_amount` once they publish `payment_post_target`
posts. Earnings accrue pro rata per post, which gives the CPM:
(earned so far / total views) * 1000.
"""
from __future__ import annotations

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List

from ugc_tracker.db.repo import Repo, parse_db_ts
from ugc_tracker.settings import Settings

def cpm_for_creator(total_posts: int, total_views: int, *, post_target: int, amount: float) -> Dict[str, Any]:
    money = (total_posts / post_target) * amount
    return {
        "money_earned_so_far": money,
        "cpm": (money / total_views) * 1000 if total_views > 0 else 0.0,
        "posts_needed_for_payment": max(0, post_target - total_posts),
        "potential_total_earnings": amount,
    }

def cpm_rows(repo: Repo, settings: Settings) -> List[Dict[str, Any]]:
    rows = repo.conn().execute(
        """
        SELECT
          c.id AS creator_id, c.username, c.display_name,
          COUNT(p.id) AS total_posts,
          COALESCE(SUM(lps.views), 0) AS total_views
        FROM creators c
        LEFT JOIN posts p ON p.creator_id = c.id
        LEFT JOIN latest_post_stats lps ON lps.post_id = p.id
        WHERE c.platform = ? AND c.is_active = 1
        GROUP BY c.id, c.username, c.display_name
        ORDER BY c.username
        """,
        (settings.platform,),
    ).fetchall()

    out: List[Dict[str, Any]] = []
    for r in rows:
        total_posts = int(r["total_posts"] or 0)
        total_views = int(r["total_views"] or 0)
        out.append(
            {
                "creator_id": r["creator_id"],
                "username": r["username"],
                "display_name": r["display_name"],
                "total_posts": total_posts,
                "total_views": total_views,
                **cpm_for_creator(
                    total_posts,
                    total_views,
                    post_target=settings.payment_post_target,
                    amount=settings.payment_amount,
                ),
            }
        )
    return out

def payment_status(
    total_posts: int,
    first_post_at: datetime | None,
    *,
    now: datetime,
    post_target: int,
    daily_target: int,
) -> Dict[str, Any]:
    days_since_start = (now - first_post_at).days if first_post_at else 0
    posts_needed = max(0, post_target - total_posts)
    is_ready = total_posts >= post_target
    posts_per_day = total_posts / days_since_start if days_since_start > 0 else 0.0

    estimated_payment_date = None
    days_until_payment = 0
    if not is_ready and posts_per_day > 0:
        days_until_payment = math.ceil(posts_needed / posts_per_day)
        estimated_payment_date = (now + timedelta(days=days_until_payment)).isoformat()

    return {
        "posts_needed": posts_needed,
        "days_since_start": days_since_start,
        "estimated_payment_date": estimated_payment_date,
        "posts_per_day": posts_per_day,
        "is_ready_for_payment": is_ready,
        "days_until_payment": days_until_payment,
        "posts_missed": max(0, days_since_start * daily_target - total_posts),
    }

def payment_rows(repo: Repo, settings: Settings, *, now: datetime) -> List[Dict[str, Any]]:
    rows = repo.conn().execute(
        """
        SELECT
          c.id AS creator_id, c.username, c.display_name,
          MIN(p.published_at) AS first_post_date,
          COUNT(p.id) AS total_posts
        FROM creators c
        LEFT JOIN posts p ON p.creator_id = c.id
        WHERE c.platform = ? AND c.is_active = 1
        GROUP BY c.id, c.username, c.display_name
        ORDER BY c.username
        """,
        (settings.platform,),
    ).fetchall()

    out: List[Dict[str, Any]] = []
    for r in rows:
        total_posts = int(r["total_posts"] or 0)
        out.append(
            {
                "creator_id": r["creator_id"],
                "username": r["username"],
                "display_name": r["display_name"],
                "first_post_date": r["first_post_date"],
                "total_posts": total_posts,
                **payment_status(
                    total_posts,
                    parse_db_ts(r["first_post_date"]),
                    now=now,
                    post_target=settings.payment_post_target,
                    daily_target=settings.daily_post_target,
                ),
            }
        )
    return out
