from __future__ import annotations

import argparse
import asyncio
import dataclasses
import json
import sys
from datetime import datetime, timezone
from typing import Any

from dotenv import load_dotenv

from ugc_tracker.logging_conf import setup_logging
from ugc_tracker.settings import Settings
from ugc_tracker.db.repo import CreatorExists, Repo
from ugc_tracker.jobs.sync_creators import sync_creators
from ugc_tracker.stats.payouts import cpm_rows, payment_rows

def _apply_cli_overrides(settings: Settings, args: argparse.Namespace) -> Settings:
    if getattr(args, "db_url", None):
        return dataclasses.replace(settings, db_url=args.db_url)
    return settings

def _print_json(data: Any) -> None:
    print(json.dumps(data, ensure_ascii=False, indent=2, default=str))

def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="ugc-tracker")
    p.add_argument("--env-file", default=".env", help="Path to .env file (default: .env)")
    p.add_argument("--log-level", default=None, help="Logging level (INFO, DEBUG, ...)")
    p.add_argument("--db-url", default=None, help="Override DB_URL (e.g., sqlite:///data/ugc-tracker.db)")

    sub = p.add_subparsers(dest="cmd", required=True)

    sub.add_parser("init-db", help="Create DB schema")

    sub_add = sub.add_parser("add-creators", help="Add creators to track")
    sub_add.add_argument("usernames", nargs="+", help="TikTok handles, with or without @")
    sub_add.add_argument("--inactive", action="store_true", help="Add them as inactive (skipped by sync)")

    sub_upd = sub.add_parser("update-creator", help="Rename or (de)activate a creator")
    sub_upd.add_argument("--id", type=int, required=True, help="Creator id")
    sub_upd.add_argument("--username", default=None)
    sub_upd.add_argument("--display-name", default=None)
    active = sub_upd.add_mutually_exclusive_group()
    active.add_argument("--active", dest="is_active", action="store_true", default=None)
    active.add_argument("--inactive", dest="is_active", action="store_false")

    sub_list = sub.add_parser("list-creators", help="Show creators with post counts")
    sub_list.add_argument("--limit", type=int, default=50)

    sub.add_parser("sync", help="Purge and reload posts of all active creators from Apify")
    sub.add_parser("cpms", help="Print CPM per active creator")
    sub.add_parser("payments", help="Print payment milestone status per active creator")

    return p

def main(argv: list[str] | None = None) -> None:
    argv = argv if argv is not None else sys.argv[1:]
    parser = build_parser()
    args = parser.parse_args(argv)

    load_dotenv(args.env_file)
    setup_logging(args.log_level)

    settings = Settings.from_env()
    settings = _apply_cli_overrides(settings, args)

    if args.cmd == "sync":
        summary = asyncio.run(sync_creators(settings=settings))
        _print_json(summary.to_dict())
        if summary.errors:
            raise SystemExit(1)
        return

    repo = Repo(settings=settings)
    repo.ensure_schema()
    try:
        if args.cmd == "init-db":
            print("DB schema is ready.")
            return

        if args.cmd == "add-creators":
            for username in args.usernames:
                creator_id, created = repo.add_creator(
                    username,
                    platform=settings.platform,
                    is_active=not args.inactive,
                )
                print(f"{'Added' if created else 'Exists'}: id={creator_id} username={username.lstrip('@')}")
            return

        if args.cmd == "update-creator":
            fields = {
                "username": args.username,
                "display_name": args.display_name,
                "is_active": args.is_active,
            }
            try:
                updated = repo.update_creator(args.id, fields)
            except CreatorExists as e:
                raise SystemExit(str(e)) from e
            if not updated:
                raise SystemExit(f"Creator not found: id={args.id}")
            print(f"Updated creator id={args.id}")
            return

        if args.cmd == "list-creators":
            _print_json(repo.list_creators_overview(limit=args.limit))
            return

        if args.cmd == "cpms":
            _print_json(cpm_rows(repo, settings))
            return

        if args.cmd == "payments":
            _print_json(payment_rows(repo, settings, now=datetime.now(timezone.utc)))
            return
    finally:
        repo.close()

    raise SystemExit(f"Unknown command: {args.cmd}")
