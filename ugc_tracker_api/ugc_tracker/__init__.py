"""UGC tracker: TikTok creator performance dashboard backend.

This package contains:
- Apify client + item normalization (scraper runs, datasets)
- Purge-and-reload sync job for active creators
- SQLite repository and aggregation queries (views, CPM, payment milestones)
- FastAPI app exposing everything to the dashboard frontend
"""

__all__ = [
    "settings",
    "logging_conf",
]
