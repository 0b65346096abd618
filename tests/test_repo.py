import dataclasses
from datetime import datetime, timezone

import pytest

from ugc_tracker.db.conn import sqlite_path_from_url
from ugc_tracker.db.repo import CreatorExists, Repo, parse_db_ts

from conftest import seed_post

T0 = datetime(2024, 6, 10, 9, 0, 0, tzinfo=timezone.utc)


def test_sqlite_path_from_url_rejects_other_backends():
    with pytest.raises(ValueError):
        sqlite_path_from_url("postgres://localhost/db")
    assert sqlite_path_from_url("sqlite:///:memory:") == ":memory:"


def test_ensure_schema_is_idempotent(repo):
    repo.ensure_schema()
    health = repo.db_health()
    assert health["backend"] == "sqlite"
    assert {"creators", "posts", "post_stats", "post_stats_original", "sync_logs"} <= set(health["tables"])
    assert health["counts"]["creators"] == 0


def test_memory_backend(settings):
    r = Repo(settings=dataclasses.replace(settings, db_url="sqlite:///:memory:"))
    r.ensure_schema()
    try:
        assert r.db_health()["backend"] == "memory"
    finally:
        r.close()


def test_unopenable_file_falls_back_to_memory(settings, tmp_path):
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory")
    r = Repo(settings=dataclasses.replace(settings, db_url=f"sqlite:///{blocker / 'ugc.db'}"))
    r.ensure_schema()
    try:
        assert r.db_health()["backend"] == "memory"
    finally:
        r.close()


def test_add_creator_strips_at_and_is_unique(repo):
    creator_id, created = repo.add_creator("@alice")
    assert created is True

    again_id, created_again = repo.add_creator("alice")
    assert again_id == creator_id
    assert created_again is False

    creator = repo.get_creator(creator_id)
    assert creator["username"] == "alice"
    assert creator["display_name"] == "alice"
    assert creator["is_active"] == 1


def test_list_active_creators_filters_inactive_and_platform(repo):
    repo.add_creator("alice")
    repo.add_creator("bob", is_active=False)
    repo.add_creator("carol", platform="instagram")

    names = [c["username"] for c in repo.list_active_creators("tiktok")]
    assert names == ["alice"]


def test_update_creator(repo):
    creator_id, _ = repo.add_creator("alice")

    assert repo.update_creator(creator_id, {"username": "@alice2", "is_active": False, "follower_count": 12})
    creator = repo.get_creator(creator_id)
    assert creator["username"] == "alice2"
    assert creator["is_active"] == 0
    assert creator["follower_count"] == 12

    assert repo.update_creator(9999, {"display_name": "nobody"}) is False


def test_rename_to_taken_username_raises_creator_exists(repo):
    repo.add_creator("alice")
    bob, _ = repo.add_creator("bob")

    with pytest.raises(CreatorExists, match="alice"):
        repo.update_creator(bob, {"username": "@alice"})

    assert repo.get_creator(bob)["username"] == "bob"
    assert repo.update_creator(bob, {"display_name": "Bob"})


def test_upsert_post_updates_in_place(repo):
    creator_id, _ = repo.add_creator("alice")
    first = seed_post(repo, creator_id, "v1", published_at=T0, views=10, caption="old")
    second = seed_post(repo, creator_id, "v1", published_at=T0, views=20, caption="new")

    assert first == second
    rows = repo.conn().execute("SELECT caption FROM posts").fetchall()
    assert [r["caption"] for r in rows] == ["new"]
    # each sync appends a snapshot; the latest one wins
    assert repo.get_latest_post_stat(first)["views"] == 20


def test_list_creators_overview_orders_by_last_post(repo):
    alice, _ = repo.add_creator("alice")
    bob, _ = repo.add_creator("bob")
    seed_post(repo, alice, "a1", published_at=T0)
    seed_post(repo, bob, "b1", published_at=datetime(2024, 6, 12, tzinfo=timezone.utc))
    seed_post(repo, bob, "b2", published_at=datetime(2024, 6, 1, tzinfo=timezone.utc))

    rows = repo.list_creators_overview()
    assert [r["username"] for r in rows] == ["bob", "alice"]
    assert rows[0]["posts_count"] == 2
    assert rows[0]["last_post_at"] == "2024-06-12 00:00:00"
    assert rows[0]["followers"] == 0


def test_purge_creator_data_only_touches_given_creators(repo):
    alice, _ = repo.add_creator("alice")
    bob, _ = repo.add_creator("bob")
    a1 = seed_post(repo, alice, "a1", published_at=T0, views=5)
    seed_post(repo, bob, "b1", published_at=T0, views=7)
    repo.save_original_post_stat_once(a1, {"views": 5, "likes": 0, "comments": 0, "shares": 0})

    counts = repo.purge_creator_data([alice])

    assert counts == {"post_stats": 1, "post_stats_original": 1, "creator_stats_daily": 0, "posts": 1}
    remaining = repo.conn().execute("SELECT creator_id FROM posts").fetchall()
    assert [r["creator_id"] for r in remaining] == [bob]
    assert repo.purge_creator_data([]) == {}


def test_sync_logs_lifecycle(repo):
    alice, _ = repo.add_creator("alice")
    log_id = repo.create_sync_log(alice, 0)
    assert repo.list_sync_logs()[0]["status"] == "queued"

    repo.finish_sync_logs([log_id], status="error", items_received=3, error="x" * 5000)

    row = repo.list_sync_logs()[0]
    assert row["status"] == "error"
    assert row["items_received"] == 3
    assert len(row["error_message"]) == 1000
    assert row["completed_at"] is not None


def test_original_stat_is_saved_once_and_edit_recomputes_engagement(repo):
    alice, _ = repo.add_creator("alice")
    post_id = seed_post(repo, alice, "a1", published_at=T0, views=100, likes=10)

    assert repo.save_original_post_stat_once(post_id, {"views": 100, "likes": 10, "comments": 0, "shares": 0})
    assert not repo.save_original_post_stat_once(post_id, {"views": 1, "likes": 1, "comments": 1, "shares": 1})
    assert repo.get_original_post_stat(post_id)["views"] == 100

    assert repo.update_latest_post_stat(post_id, {"views": 200, "likes": 20, "comments": 10, "shares": 10})
    latest = repo.get_latest_post_stat(post_id)
    assert latest["views"] == 200
    assert latest["engagement_rate"] == pytest.approx(0.2)

    assert repo.update_latest_post_stat(424242, {"views": 1, "likes": 1, "comments": 1, "shares": 1}) is False


def test_parse_db_ts():
    assert parse_db_ts("2024-06-10 09:00:00") == T0
    assert parse_db_ts(None) is None
    assert parse_db_ts("garbage") is None
