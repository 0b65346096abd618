from __future__ import annotations

import json
import logging
import os
import platform
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiohttp
from dotenv import load_dotenv
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Query, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.staticfiles import StaticFiles

from ugc_tracker.logging_conf import setup_logging
from ugc_tracker.settings import Settings
from ugc_tracker.accounts import authenticate_user, generate_token, get_user_by_id
from ugc_tracker.api.auth import current_claims, require_api_key, require_cron_key
from ugc_tracker.api.job_manager import JobAlreadyRunning, JobManager
from ugc_tracker.api.schemas import (
    CreatorCreateRequest,
    CreatorItem,
    CreatorListResponse,
    CreatorUpdateRequest,
    JobResponse,
    LoginRequest,
    PostStatsActionRequest,
    PostStatsUpdateRequest,
    StatValues,
)
from ugc_tracker.apify.client import ApifyAPI, ApifyError, is_valid_actor_id
from ugc_tracker.db.repo import CreatorExists, Repo
from ugc_tracker.jobs.sync_creators import sync_creators
from ugc_tracker.stats.dashboard import dashboard_stats, top_video_for_date
from ugc_tracker.stats.payouts import cpm_rows, payment_rows

log = logging.getLogger(__name__)

TOKEN_COOKIE = "token"
SYNC_JOB_TYPE = "sync_creators"

ACTOR_FORMATS = [
    "username~actor-name (e.g., apify~tiktok-scraper)",
    "Actor UUID (e.g., 12345678-abcd-1234-abcd-123456789abc)",
]


def _load_env() -> None:
    """Load .env for local development.

    Set ENV_FILE to override the default.
    """
    env_file = os.getenv("ENV_FILE", ".env")
    if env_file and Path(env_file).exists():
        load_dotenv(env_file)


def _parse_cors_origins(raw: str) -> List[str]:
    raw = (raw or "").strip()
    if not raw:
        return []

    # Accept JSON list first, fallback to comma-separated.
    try:
        v = json.loads(raw)
        if isinstance(v, list):
            return [str(x) for x in v if str(x).strip()]
    except ValueError:
        pass

    return [x.strip() for x in raw.split(",") if x.strip()]


def _open_repo(request: Request) -> Repo:
    repo = Repo(settings=request.app.state.settings)
    repo.ensure_schema()
    return repo


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _stat_values(row: Dict[str, Any]) -> Dict[str, int]:
    return StatValues(**{k: int(row[k] or 0) for k in ("views", "likes", "comments", "shares")}).model_dump()


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    _load_env()
    setup_logging(os.getenv("LOG_LEVEL", "INFO"))

    settings = settings or Settings.from_env()
    settings.data_dir.mkdir(parents=True, exist_ok=True)

    # Ensure schema on startup.
    repo = Repo(settings=settings)
    repo.ensure_schema()
    repo.close()

    app = FastAPI(title="UGC Tracker API", version="0.1")

    # Store shared objects
    app.state.settings = settings
    app.state.jobs = JobManager()
    app.state.apify_factory = ApifyAPI.from_settings

    # CORS
    cors_origins = _parse_cors_origins(settings.cors_origins)
    if cors_origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=cors_origins,
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # --- basic ---
    @app.get("/health")
    def health() -> Dict[str, str]:
        return {"status": "ok"}

    # --- api router (optionally protected by API_KEY) ---
    router = APIRouter(prefix="/api", dependencies=[Depends(require_api_key)])

    @router.get("/settings")
    def get_settings_endpoint(request: Request) -> Dict[str, Any]:
        s: Settings = request.app.state.settings
        # Do not return credentials.
        return {
            "db_url": s.db_url,
            "data_dir": str(s.data_dir),
            "platform": s.platform,
            "apify": {
                "base_url": s.apify_base_url,
                "actor_id": s.apify_actor_id,
                "has_token": bool(s.apify_token),
                "poll_interval_seconds": s.apify_poll_interval_seconds,
                "max_polls": s.apify_max_polls,
                "results_per_page": s.apify_results_per_page,
                "request_attempts": s.request_attempts,
            },
            "sync": {
                "batch_size": s.sync_batch_size,
                "batch_sleep_seconds": s.sync_batch_sleep_seconds,
                "cron_enabled": bool(s.cron_secret),
            },
            "payments": {
                "post_target": s.payment_post_target,
                "amount": s.payment_amount,
                "daily_post_target": s.daily_post_target,
            },
        }

    # ---------
    # Dashboard
    # ---------

    @router.get("/dashboard/stats")
    def get_dashboard_stats(request: Request) -> Dict[str, Any]:
        s: Settings = request.app.state.settings
        repo = _open_repo(request)
        try:
            data = dashboard_stats(repo, now=_now(), platform=s.platform)
        finally:
            repo.close()
        return {"success": True, "data": data}

    @router.get("/dashboard/top-video")
    def get_top_video(
        request: Request,
        date_param: Optional[str] = Query(default=None, alias="date", description="YYYY-MM-DD (UTC)"),
    ) -> Dict[str, Any]:
        if not date_param:
            raise HTTPException(status_code=400, detail="Date parameter is required")
        try:
            day = date.fromisoformat(date_param)
        except ValueError:
            raise HTTPException(status_code=400, detail=f"Invalid date: {date_param}")

        s: Settings = request.app.state.settings
        repo = _open_repo(request)
        try:
            video = top_video_for_date(repo, day, platform=s.platform)
        finally:
            repo.close()

        if video is None:
            raise HTTPException(status_code=404, detail="No video found for this date")
        return {"success": True, "video": video}

    @router.get("/cpms/calculate")
    def calculate_cpms(request: Request) -> Dict[str, Any]:
        repo = _open_repo(request)
        try:
            rows = cpm_rows(repo, request.app.state.settings)
        finally:
            repo.close()
        return {"success": True, "data": rows}

    @router.get("/payments/status")
    def get_payment_status(request: Request) -> Dict[str, Any]:
        repo = _open_repo(request)
        try:
            rows = payment_rows(repo, request.app.state.settings, now=_now())
        finally:
            repo.close()
        return {"success": True, "data": rows}

    # ----------------
    # Manual stat edits
    # ----------------

    @router.get("/posts/{post_id}/stats")
    def get_post_stats(request: Request, post_id: int) -> Dict[str, Any]:
        repo = _open_repo(request)
        try:
            latest = repo.get_latest_post_stat(post_id)
            original = repo.get_original_post_stat(post_id)
        finally:
            repo.close()

        if latest is None:
            raise HTTPException(status_code=404, detail=f"Post not found: id={post_id}")
        latest.pop("id", None)
        return {
            "success": True,
            "stats": latest,
            "hasOriginalStats": original is not None,
            "originalStats": _stat_values(original) if original else None,
        }

    @router.put("/posts/{post_id}/stats")
    def update_post_stats(request: Request, post_id: int, payload: PostStatsUpdateRequest) -> Dict[str, Any]:
        reason = payload.invalid_reason()
        if reason is not None:
            raise HTTPException(status_code=400, detail=reason)

        repo = _open_repo(request)
        try:
            latest = repo.get_latest_post_stat(post_id)
            if latest is None:
                raise HTTPException(status_code=404, detail=f"Post not found: id={post_id}")

            current = _stat_values(latest)
            repo.save_original_post_stat_once(post_id, current)
            new_values = payload.to_values()
            repo.update_latest_post_stat(post_id, new_values)
        finally:
            repo.close()

        log.info("Manually edited stats of post %s: %s -> %s", post_id, current, new_values)
        return {
            "success": True,
            "message": "Stats updated successfully",
            "originalStats": current,
            "newStats": new_values,
        }

    @router.post("/posts/{post_id}/stats")
    def post_stats_action(request: Request, post_id: int, payload: PostStatsActionRequest) -> Dict[str, Any]:
        if payload.action != "undo":
            raise HTTPException(status_code=400, detail=f"Unknown action: {payload.action}")

        repo = _open_repo(request)
        try:
            original = repo.get_original_post_stat(post_id)
            if original is None:
                raise HTTPException(status_code=404, detail="No original stats found to undo to")
            restored = _stat_values(original)
            if not repo.update_latest_post_stat(post_id, restored):
                raise HTTPException(status_code=404, detail=f"Post not found: id={post_id}")
        finally:
            repo.close()

        log.info("Restored original stats of post %s", post_id)
        return {
            "success": True,
            "message": "Stats restored to original values",
            "restoredStats": restored,
        }

    # --------
    # Creators
    # --------

    @router.get("/creators", response_model=CreatorListResponse)
    def list_creators(request: Request, limit: int = Query(default=50, ge=1, le=200)) -> CreatorListResponse:
        repo = _open_repo(request)
        try:
            rows = repo.list_creators_overview(limit=int(limit))
        finally:
            repo.close()

        items = [
            CreatorItem(
                id=int(r["id"]),
                username=r["username"],
                display_name=r.get("display_name"),
                platform=r.get("platform") or "tiktok",
                is_active=bool(r.get("is_active")),
                followers=int(r.get("followers") or 0),
                posts_count=int(r.get("posts_count") or 0),
                last_post_at=r.get("last_post_at"),
                created_at=r.get("created_at"),
            )
            for r in rows
        ]
        return CreatorListResponse(ok=True, items=items, count=len(items))

    @router.post("/creators")
    def add_creator(request: Request, payload: CreatorCreateRequest, response: Response) -> Dict[str, Any]:
        s: Settings = request.app.state.settings
        username = payload.username.strip().lstrip("@")
        if not username:
            raise HTTPException(status_code=400, detail="username must not be empty")

        repo = _open_repo(request)
        try:
            creator_id, created = repo.add_creator(
                username,
                display_name=payload.display_name,
                platform=s.platform,
                external_id=payload.external_id,
                is_active=payload.is_active,
            )
            creator = repo.get_creator(creator_id)
        finally:
            repo.close()

        response.status_code = 201 if created else 200
        return {"ok": True, "created": created, "creator": creator}

    @router.patch("/creators/{creator_id}")
    def update_creator(request: Request, creator_id: int, payload: CreatorUpdateRequest) -> Dict[str, Any]:
        repo = _open_repo(request)
        try:
            if repo.get_creator(creator_id) is None:
                raise HTTPException(status_code=404, detail=f"Creator not found: id={creator_id}")
            try:
                repo.update_creator(creator_id, payload.model_dump(exclude_none=True))
            except CreatorExists as e:
                raise HTTPException(status_code=409, detail=str(e)) from e
            creator = repo.get_creator(creator_id)
        finally:
            repo.close()
        return {"ok": True, "creator": creator}

    @router.get("/db-health")
    def db_health(request: Request) -> Dict[str, Any]:
        repo = _open_repo(request)
        try:
            health = repo.db_health()
            health["recent_sync_logs"] = repo.list_sync_logs(limit=10)
        finally:
            repo.close()
        return {"ok": True, **health}

    # ----
    # Sync
    # ----

    @router.post("/sync")
    async def trigger_actor_run(request: Request) -> Dict[str, Any]:
        s: Settings = request.app.state.settings
        log.info("Starting one-shot actor run")

        missing: List[str] = []
        if len(s.apify_token or "") <= 10:
            missing.append("APIFY_TOKEN")
        if not s.apify_actor_id:
            missing.append("APIFY_ACTOR_ID")
        if missing:
            raise HTTPException(
                status_code=400,
                detail={"error": f"Missing env: {', '.join(missing)}", "missing": missing},
            )

        if not is_valid_actor_id(s.apify_actor_id):
            raise HTTPException(
                status_code=400,
                detail={
                    "error": "Invalid Actor ID format",
                    "message": f'The Actor ID "{s.apify_actor_id}" doesn\'t match the expected format',
                    "actorId": s.apify_actor_id,
                    "expectedFormats": ACTOR_FORMATS,
                    "howToFix": [
                        "Go to Apify -> Actors -> Your Actor -> API tab",
                        "Copy the exact ID from the Run URL: https://api.apify.com/v2/acts/<ACTOR_ID>/runs",
                        "If you see a short ID like vB0foLluLnDBEWNgL, that might be a Task ID, not an Actor ID",
                    ],
                },
            )

        api = request.app.state.apify_factory(s)
        try:
            run = await api.start_actor_run(s.apify_actor_id, {})
        except ApifyError as e:
            if e.status == 404 and e.error_type == "record-not-found":
                raise HTTPException(
                    status_code=400,
                    detail={
                        "error": "Apify Actor not found",
                        "message": str(e) or "Actor was not found",
                        "actorId": s.apify_actor_id,
                        "howToFix": [
                            "Use the exact Actor ID from Apify -> Actor -> API tab (acts/<ID>/runs)",
                            "Accepted formats: " + " or ".join(ACTOR_FORMATS),
                            "Ensure APIFY_TOKEN belongs to an account with access to this Actor",
                        ],
                    },
                )
            log.error("Apify actor run failed: status=%s type=%s message=%s", e.status, e.error_type, e)
            raise HTTPException(status_code=500, detail={"type": e.error_type, "message": str(e)})
        except (aiohttp.ClientError, OSError) as e:
            log.error("Apify actor run failed: %r", e)
            raise HTTPException(status_code=500, detail=str(e) or repr(e))

        return {"ok": True, "runId": run["id"]}

    @router.get("/sync-debug")
    def sync_debug(request: Request) -> Dict[str, Any]:
        s: Settings = request.app.state.settings
        actor_id = s.apify_actor_id
        return {
            "ok": True,
            "hasAPIFY_TOKEN": len(s.apify_token or "") > 10,
            "hasAPIFY_ACTOR_ID": bool(actor_id),
            "apifyUrlPreview": f"{s.apify_base_url.rstrip('/')}/acts/{actor_id}/runs?token=***" if actor_id else None,
            "pythonVersion": platform.python_version(),
        }

    # -----
    # Jobs
    # -----

    @router.post("/jobs/sync", response_model=JobResponse)
    async def job_sync(request: Request) -> JobResponse:
        s: Settings = request.app.state.settings
        jobs: JobManager = request.app.state.jobs

        api = request.app.state.apify_factory(s)

        async def _run() -> Dict[str, Any]:
            summary = await sync_creators(settings=s, api=api)
            return summary.to_dict()

        try:
            job = await jobs.create(SYNC_JOB_TYPE, _run)
        except JobAlreadyRunning as e:
            raise HTTPException(status_code=409, detail=str(e))
        return JobResponse(**job.to_dict())

    @router.get("/jobs/{job_id}", response_model=JobResponse)
    async def get_job(request: Request, job_id: str) -> JobResponse:
        jobs: JobManager = request.app.state.jobs
        job = await jobs.get(job_id)
        if not job:
            raise HTTPException(status_code=404, detail=f"Job not found: {job_id}")
        return JobResponse(**job.to_dict())

    @router.get("/jobs", response_model=List[JobResponse])
    async def list_jobs(request: Request, limit: int = Query(default=50, ge=1, le=200)) -> List[JobResponse]:
        jobs: JobManager = request.app.state.jobs
        items = await jobs.list(limit=int(limit))
        return [JobResponse(**j.to_dict()) for j in items]

    # --- cron trigger (x-cron-key instead of API_KEY) ---
    cron_router = APIRouter(prefix="/api/cron", dependencies=[Depends(require_cron_key)])

    @cron_router.post("/run")
    async def cron_run(request: Request) -> Any:
        s: Settings = request.app.state.settings
        jobs: JobManager = request.app.state.jobs
        api = request.app.state.apify_factory(s)

        async def _run() -> Dict[str, Any]:
            summary = await sync_creators(settings=s, api=api)
            return summary.to_dict()

        log.info("Starting TikTok scraper cron job")
        try:
            job = await jobs.run(SYNC_JOB_TYPE, _run)
        except JobAlreadyRunning as e:
            return JSONResponse(status_code=409, content={"success": False, "error": str(e)})
        except Exception as e:
            log.error("Cron sync failed: %r", e)
            return JSONResponse(status_code=500, content={"success": False, "error": str(e) or repr(e)})

        result = job.result
        return {
            "success": True,
            "message": result["message"],
            "processed": result["processed"],
            "errors": result["errors"],
            "batches": result["batches"],
        }

    # --- login (JWT in an HttpOnly cookie) ---
    auth_router = APIRouter(prefix="/api/auth")

    @auth_router.post("/login")
    def login(request: Request, payload: LoginRequest, response: Response) -> Dict[str, Any]:
        if not payload.email or not payload.password:
            raise HTTPException(status_code=400, detail="Email and password are required")

        s: Settings = request.app.state.settings
        user = authenticate_user(payload.email, payload.password)
        if user is None:
            raise HTTPException(status_code=401, detail="Invalid credentials")

        token = generate_token(user, s)
        response.set_cookie(
            TOKEN_COOKIE,
            token,
            max_age=s.jwt_expires_days * 24 * 60 * 60,
            path="/",
            httponly=True,
            samesite="strict",
        )
        return {"success": True, "user": user.public(), "token": token}

    @auth_router.post("/logout")
    def logout(response: Response) -> Dict[str, Any]:
        response.delete_cookie(TOKEN_COOKIE, path="/", httponly=True, samesite="strict")
        return {"success": True, "message": "Logged out successfully"}

    @auth_router.get("/me")
    def me(claims: Dict[str, Any] = Depends(current_claims)) -> Dict[str, Any]:
        user = get_user_by_id(int(claims.get("userId") or 0))
        if user is None:
            raise HTTPException(status_code=404, detail="User not found")
        return {"success": True, "user": user.public()}

    app.include_router(router)
    app.include_router(cron_router)
    app.include_router(auth_router)

    # Serve the built dashboard last so API routes take precedence.
    if settings.static_dir and settings.static_dir.is_dir():
        app.mount("/", StaticFiles(directory=str(settings.static_dir), html=True), name="dashboard")

    return app
