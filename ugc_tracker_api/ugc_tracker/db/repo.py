from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ugc_tracker.settings import Settings
from ugc_tracker.db.conn import connect_sqlite, is_memory_connection

log = logging.getLogger(__name__)

DB_TS_FORMAT = "%Y-%m-%d %H:%M:%S"

HEALTH_TABLES = ("creators", "posts", "post_stats", "creator_stats_daily", "sync_logs")

def format_db_ts(dt: datetime) -> str:
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc)
    return dt.strftime(DB_TS_FORMAT)

def parse_db_ts(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.strptime(value[:19], DB_TS_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None

def utcnow_db() -> str:
    return format_db_ts(datetime.now(timezone.utc))

def engagement_rate(views: int, likes: int, comments: int, shares: int) -> float:
    return (likes + comments + shares) / views if views > 0 else 0.0

def _marks(n: int) -> str:
    return ",".join(["?"] * n)


class CreatorExists(ValueError):
    def __init__(self, username: str) -> None:
        super().__init__(f"Username already exists: {username}")
        self.username = username


@dataclass
class Repo:
    settings: Settings = field(default_factory=Settings.from_env)
    _conn: sqlite3.Connection | None = None

    def conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = connect_sqlite(self.settings.db_url)
        return self._conn

    def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    # ---- schema & migrations ----
    def ensure_schema(self) -> None:
        """Create tables if missing + migrate columns if needed."""
        schema_path = Path(__file__).with_name("schema.sql")
        sql = schema_path.read_text(encoding="utf-8")
        self.conn().executescript(sql)
        self.conn().commit()
        self._migrate()
        self.conn().commit()

    def _table_columns(self, table: str) -> set[str]:
        try:
            rows = self.conn().execute(f"PRAGMA table_info({table})").fetchall()
        except sqlite3.OperationalError:
            return set()
        return {r["name"] for r in rows}

    def _ensure_column(self, table: str, col_name: str, col_def_sql: str) -> None:
        cols = self._table_columns(table)
        if col_name in cols:
            return
        self.conn().execute(f"ALTER TABLE {table} ADD COLUMN {col_def_sql}")
        log.warning("Migrated: added column %s to %s", col_name, table)

    def _migrate(self) -> None:
        # databases created before follower tracking / post upserts
        self._ensure_column("creators", "external_id", "external_id TEXT")
        self._ensure_column("creators", "follower_count", "follower_count INTEGER NOT NULL DEFAULT 0")
        self._ensure_column("posts", "updated_at", "updated_at TEXT")
        self._ensure_column("post_stats", "saves", "saves INTEGER NOT NULL DEFAULT 0")

    # -------- creators --------
    def list_active_creators(self, platform: str) -> List[Dict[str, Any]]:
        rows = self.conn().execute(
            """
            SELECT id, external_id, platform, username, display_name, is_active
            FROM creators
            WHERE is_active = 1 AND platform = ?
            ORDER BY id ASC
            """,
            (platform,),
        ).fetchall()
        return [dict(r) for r in rows]

    def get_creator(self, creator_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn().execute("SELECT * FROM creators WHERE id=?", (creator_id,)).fetchone()
        return dict(row) if row else None

    def get_creator_by_username(self, username: str) -> Optional[Dict[str, Any]]:
        row = self.conn().execute("SELECT * FROM creators WHERE username=?", (username,)).fetchone()
        return dict(row) if row else None

    def add_creator(
        self,
        username: str,
        *,
        display_name: Optional[str] = None,
        platform: str = "tiktok",
        external_id: Optional[str] = None,
        is_active: bool = True,
    ) -> Tuple[int, bool]:
        """Insert a creator unless the username exists. Returns (id, created)."""
        username = username.strip().lstrip("@")
        cur = self.conn().execute(
            """
            INSERT OR IGNORE INTO creators (username, display_name, platform, external_id, is_active, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (username, display_name or username, platform, external_id or username, 1 if is_active else 0, utcnow_db()),
        )
        self.conn().commit()
        if cur.rowcount == 1:
            return int(cur.lastrowid), True
        existing = self.get_creator_by_username(username)
        assert existing is not None
        return int(existing["id"]), False

    def update_creator(self, creator_id: int, fields: Dict[str, Any]) -> bool:
        allowed = {"username", "display_name", "is_active", "follower_count", "external_id", "profile_url", "avatar_url"}
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if "is_active" in updates:
            updates["is_active"] = 1 if updates["is_active"] else 0
        if "username" in updates:
            updates["username"] = str(updates["username"]).strip().lstrip("@")
        if not updates:
            return self.get_creator(creator_id) is not None

        sets = ", ".join(f"{k}=?" for k in updates)
        try:
            cur = self.conn().execute(
                f"UPDATE creators SET {sets} WHERE id=?",
                (*updates.values(), creator_id),
            )
        except sqlite3.IntegrityError as e:
            self.conn().rollback()
            raise CreatorExists(str(updates.get("username", ""))) from e
        self.conn().commit()
        return cur.rowcount == 1

    def list_creators_overview(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.conn().execute(
            """
            SELECT
              c.id,
              c.username,
              c.display_name,
              c.platform,
              c.is_active,
              c.follower_count AS followers,
              (SELECT COUNT(*) FROM posts WHERE creator_id = c.id) AS posts_count,
              (SELECT MAX(published_at) FROM posts WHERE creator_id = c.id) AS last_post_at,
              c.created_at
            FROM creators c
            ORDER BY COALESCE(
              (SELECT MAX(published_at) FROM posts WHERE creator_id = c.id),
              c.created_at
            ) DESC
            LIMIT ?
            """,
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    # -------- sync: purge + reload --------
    def purge_creator_data(self, creator_ids: List[int]) -> Dict[str, int]:
        """Delete everything imported for these creators (children first)."""
        if not creator_ids:
            return {}
        marks = _marks(len(creator_ids))
        ids = tuple(creator_ids)
        posts_sub = f"SELECT id FROM posts WHERE creator_id IN ({marks})"

        conn = self.conn()
        with conn:  # transaction
            counts = {
                "post_stats": conn.execute(
                    f"DELETE FROM post_stats WHERE post_id IN ({posts_sub})", ids
                ).rowcount,
                "post_stats_original": conn.execute(
                    f"DELETE FROM post_stats_original WHERE post_id IN ({posts_sub})", ids
                ).rowcount,
                "creator_stats_daily": conn.execute(
                    f"DELETE FROM creator_stats_daily WHERE creator_id IN ({marks})", ids
                ).rowcount,
                "posts": conn.execute(
                    f"DELETE FROM posts WHERE creator_id IN ({marks})", ids
                ).rowcount,
            }
        return counts

    def upsert_post(self, post: Dict[str, Any]) -> int:
        """Insert or refresh a post keyed on (creator_id, external_id, platform)."""
        row = dict(post)
        row.setdefault("content_type", "video")
        row["updated_at"] = utcnow_db()
        self.conn().execute(
            """
            INSERT INTO posts (
              creator_id, external_id, platform, content_type, caption,
              media_url, thumbnail_url, post_url, published_at,
              created_at, updated_at
            )
            VALUES (
              :creator_id, :external_id, :platform, :content_type, :caption,
              :media_url, :thumbnail_url, :post_url, :published_at,
              :updated_at, :updated_at
            )
            ON CONFLICT(creator_id, external_id, platform) DO UPDATE SET
              caption=excluded.caption,
              media_url=excluded.media_url,
              thumbnail_url=excluded.thumbnail_url,
              post_url=excluded.post_url,
              published_at=excluded.published_at,
              updated_at=excluded.updated_at
            """,
            row,
        )
        found = self.conn().execute(
            "SELECT id FROM posts WHERE creator_id=? AND external_id=? AND platform=?",
            (row["creator_id"], row["external_id"], row["platform"]),
        ).fetchone()
        return int(found["id"])

    def insert_post_stat(self, post_id: int, stat: Dict[str, Any]) -> int:
        """Always a new snapshot row; existing snapshots are never overwritten here."""
        cur = self.conn().execute(
            """
            INSERT INTO post_stats (post_id, likes, comments, shares, views, saves, engagement_rate, recorded_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                post_id,
                int(stat.get("likes") or 0),
                int(stat.get("comments") or 0),
                int(stat.get("shares") or 0),
                int(stat.get("views") or 0),
                int(stat.get("saves") or 0),
                float(stat.get("engagement_rate") or 0.0),
                utcnow_db(),
            ),
        )
        return int(cur.lastrowid)

    # -------- sync logs --------
    def create_sync_log(self, creator_id: Optional[int], batch_index: int, platform: str = "tiktok") -> int:
        cur = self.conn().execute(
            """
            INSERT INTO sync_logs (creator_id, platform, batch_index, status, started_at)
            VALUES (?, ?, ?, 'queued', ?)
            """,
            (creator_id, platform, batch_index, utcnow_db()),
        )
        self.conn().commit()
        return int(cur.lastrowid)

    def finish_sync_logs(
        self,
        log_ids: Iterable[int],
        *,
        status: str,
        items_received: int = 0,
        records_processed: int = 0,
        error: Optional[str] = None,
    ) -> None:
        ids = list(log_ids)
        if not ids:
            return
        self.conn().execute(
            f"""
            UPDATE sync_logs
            SET status=?, items_received=?, records_processed=?, error_message=?, completed_at=?
            WHERE id IN ({_marks(len(ids))})
            """,
            (status, items_received, records_processed, error[:1000] if error else None, utcnow_db(), *ids),
        )
        self.conn().commit()

    def list_sync_logs(self, limit: int = 50) -> List[Dict[str, Any]]:
        rows = self.conn().execute(
            "SELECT * FROM sync_logs ORDER BY id DESC LIMIT ?",
            (limit,),
        ).fetchall()
        return [dict(r) for r in rows]

    # -------- manual stat edits --------
    def get_latest_post_stat(self, post_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn().execute(
            """
            SELECT id, views, likes, comments, shares, engagement_rate
            FROM latest_post_stats
            WHERE post_id=?
            """,
            (post_id,),
        ).fetchone()
        return dict(row) if row else None

    def get_original_post_stat(self, post_id: int) -> Optional[Dict[str, Any]]:
        row = self.conn().execute(
            "SELECT views, likes, comments, shares FROM post_stats_original WHERE post_id=?",
            (post_id,),
        ).fetchone()
        return dict(row) if row else None

    def save_original_post_stat_once(self, post_id: int, stat: Dict[str, Any]) -> bool:
        """Keep the first pre-edit values; later edits must not replace them."""
        cur = self.conn().execute(
            """
            INSERT OR IGNORE INTO post_stats_original (post_id, views, likes, comments, shares, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (post_id, stat["views"], stat["likes"], stat["comments"], stat["shares"], utcnow_db()),
        )
        self.conn().commit()
        return cur.rowcount == 1

    def update_latest_post_stat(self, post_id: int, values: Dict[str, int]) -> bool:
        latest = self.get_latest_post_stat(post_id)
        if latest is None:
            return False
        views, likes = int(values["views"]), int(values["likes"])
        comments, shares = int(values["comments"]), int(values["shares"])
        cur = self.conn().execute(
            """
            UPDATE post_stats
            SET views=?, likes=?, comments=?, shares=?, engagement_rate=?
            WHERE id=?
            """,
            (views, likes, comments, shares, engagement_rate(views, likes, comments, shares), latest["id"]),
        )
        self.conn().commit()
        return cur.rowcount == 1

    # -------- health --------
    def db_health(self) -> Dict[str, Any]:
        tables = [
            r["name"]
            for r in self.conn().execute(
                "SELECT name FROM sqlite_master WHERE type='table' ORDER BY name"
            ).fetchall()
        ]

        counts: Dict[str, Optional[int]] = {}
        for table in HEALTH_TABLES:
            if table not in tables:
                counts[table] = None
                continue
            counts[table] = int(self.conn().execute(f"SELECT COUNT(*) AS c FROM {table}").fetchone()["c"])

        samples: List[Dict[str, Any]] = []
        if "creators" in tables:
            rows = self.conn().execute(
                "SELECT id, username, display_name, follower_count FROM creators ORDER BY id LIMIT 3"
            ).fetchall()
            samples = [
                {
                    "id": r["id"],
                    "username": r["username"],
                    "display_name": r["display_name"],
                    "followers": r["follower_count"] or 0,
                }
                for r in rows
            ]

        return {
            "backend": "memory" if is_memory_connection(self.conn()) else "sqlite",
            "tables": tables,
            "counts": counts,
            "samples": samples,
        }
