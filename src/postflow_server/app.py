import logging
import os
from contextlib import asynccontextmanager
from typing import Any, List, Optional

import httpx
from fastapi import Depends, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from postflow_core.config.settings import Settings, settings as default_settings
from postflow_server.clients.base import SiteClient, StaticBlacklist
from postflow_server.clients.browser import BrowserSessionPool
from postflow_server.clients.coupang import CoupangPartnersClient
from postflow_server.clients.llm import OpenAIContentGenerator
from postflow_server.clients.site import load_site_client
from postflow_server.database import create_all_tables, create_session_maker
from postflow_server.dependencies import get_scheduler
from postflow_server.engine.rate_limiter import TokenBucket
from postflow_server.engine.retry import RetryPolicy
from postflow_server.engine.supervisor import LoopSupervisor
from postflow_server.errors import (
    InvalidStateTransitionError,
    JobNotFoundError,
    PersistenceError,
    TerminalAutomationError,
    ValidationError,
)
from postflow_server.jobs.logs import JobLogger
from postflow_server.jobs.queue import JobQueueProcessor
from postflow_server.jobs.router import router as jobs_router
from postflow_server.jobs.scheduler import JobScheduler
from postflow_server.jobs.service import JobService
from postflow_server.jobs.store import JobStore
from postflow_server.jobs.types import JobType
from postflow_server.monitoring.service import MonitoringService
from postflow_server.monitoring.store import MonitoredPostStore
from postflow_server.processors.base import ProcessorRegistry
from postflow_server.processors.comment import CommentJobProcessor
from postflow_server.processors.coupas import CoupasJobProcessor
from postflow_server.processors.deletion import PostDeletionProcessor
from postflow_server.processors.post import PostJobProcessor

logger = logging.getLogger("postflow_server")


def _sqlite_dir(database_url: str) -> Optional[str]:
    _, sep, path = database_url.partition(":///")
    if not sep or path in ("", ":memory:"):
        return None
    return os.path.dirname(path) or None


def build_processors(
    config: Settings,
    store: JobStore,
    job_logger: JobLogger,
    site: SiteClient,
    sessions: BrowserSessionPool,
    http_client: httpx.AsyncClient,
) -> tuple[ProcessorRegistry, PostDeletionProcessor]:
    retry_policy = RetryPolicy.from_settings(config)
    browser_options: dict[str, Any] = {
        "session_mode": config.browser_session_mode,
        "task_delay": config.task_delay,
        "retry_policy": retry_policy,
    }
    registry = ProcessorRegistry(
        [
            PostJobProcessor(store, job_logger, site, sessions, **browser_options),
            CommentJobProcessor(store, job_logger, site, sessions, **browser_options),
        ]
    )

    try:
        content_generator = OpenAIContentGenerator(config.openai_api_key, config.openai_model)
        partner_api = CoupangPartnersClient(
            config.coupang_access_key or "",
            config.coupang_secret_key or "",
            sub_id=config.coupang_sub_id,
            base_url=config.coupang_base_url,
            timeout=config.http_timeout,
        )
    except TerminalAutomationError as e:
        logger.warning(f"Coupas jobs disabled: {e}")
    else:
        registry.register(
            CoupasJobProcessor(
                store,
                job_logger,
                site,
                sessions,
                partner_api,
                content_generator,
                TokenBucket(config.coupang_rate_limit, refill_interval=config.coupang_rate_window),
                blacklist=StaticBlacklist(config.gallery_blacklist),
                http_client=http_client,
                work_dir=config.work_dir,
                keyword_min=config.coupas_keyword_min,
                keyword_max=config.coupas_keyword_max,
                products_per_keyword=config.coupas_products_per_keyword,
                comment_template=config.coupas_comment_template,
                **browser_options,
            )
        )

    deletion = PostDeletionProcessor(store, job_logger, site, sessions, **browser_options)
    return registry, deletion


@asynccontextmanager
async def lifespan(app: FastAPI) -> Any:
    config: Settings = app.state.settings
    try:
        db_dir = _sqlite_dir(config.database_url)
        if db_dir:
            os.makedirs(db_dir, exist_ok=True)
        app.state.engine, app.state.db_session_maker = create_session_maker(config.database_url)
        await create_all_tables(app.state.engine)
    except Exception as e:
        logger.warning(f"Failed to create database session: {e}")
        raise

    store = JobStore(app.state.db_session_maker)
    job_logger = JobLogger(store)
    app.state.job_service = JobService(store, job_logger)
    app.state.http_client = httpx.AsyncClient(timeout=config.http_timeout)

    site: Optional[SiteClient] = app.state.site_client
    if site is None and config.site_plugin:
        site = load_site_client(config.site_plugin, headless=not config.show_browser_window)

    sessions: Optional[BrowserSessionPool] = None
    supervisors: List[LoopSupervisor] = []
    if site is not None:
        sessions = BrowserSessionPool(site.open_session)
        registry, deletion = build_processors(config, store, job_logger, site, sessions, app.state.http_client)
        if config.monitoring_enabled:
            monitoring = MonitoringService(
                MonitoredPostStore(app.state.db_session_maker),
                app.state.job_service,
                site,
                sessions,
                galleries=config.monitored_galleries,
                comments=config.monitor_comments,
            )
            supervisors = monitoring.supervisors(config.monitor_crawl_interval, config.monitor_comment_interval)
    else:
        logger.warning("No site plugin configured, jobs will be accepted but not processed")
        registry, deletion = ProcessorRegistry(), None

    queue = JobQueueProcessor(
        store,
        registry,
        job_logger,
        deletion_processor=deletion,
        concurrency_limits=config.concurrency_limits,
        claim_batch_size=config.claim_batch_size,
    )
    app.state.scheduler = JobScheduler(
        queue, ready_interval=config.ready_poll_interval, deletion_interval=config.deletion_poll_interval
    )
    if app.state.start_scheduler:
        await app.state.scheduler.start()
        for supervisor in supervisors:
            await supervisor.start()

    yield

    for supervisor in supervisors:
        await supervisor.stop()
    await app.state.scheduler.stop()
    coupas = registry.get(JobType.COUPAS)
    if isinstance(coupas, CoupasJobProcessor) and isinstance(coupas.partner_api, CoupangPartnersClient):
        await coupas.partner_api.aclose()
    if sessions is not None:
        await sessions.close_all()
    await app.state.http_client.aclose()
    await app.state.engine.dispose()
    logger.info("Application shutdown completed")


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(JobNotFoundError)
    async def job_not_found(request: Request, exc: JobNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"success": False, "detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_error(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=400, content={"success": False, "detail": str(exc), "field": exc.field})

    @app.exception_handler(InvalidStateTransitionError)
    async def invalid_transition(request: Request, exc: InvalidStateTransitionError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"success": False, "detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_error(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error(f"Job store unavailable: {exc}")
        return JSONResponse(status_code=503, content={"success": False, "detail": "Job store unavailable"})


def create_app(
    config: Optional[Settings] = None,
    *,
    site_client: Optional[SiteClient] = None,
    start_scheduler: Optional[bool] = None,
) -> FastAPI:
    config = config or default_settings
    app = FastAPI(
        title="postflow",
        description="Job orchestration for multi-step content automation",
        lifespan=lifespan,
    )
    app.state.settings = config
    app.state.site_client = site_client
    app.state.start_scheduler = config.scheduler_enabled if start_scheduler is None else start_scheduler

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_error_handlers(app)
    app.include_router(jobs_router)

    @app.get("/health")
    async def health_check(scheduler: Optional[JobScheduler] = Depends(get_scheduler)) -> dict[str, Any]:
        return {"status": "ok", "scheduler": "running" if scheduler is not None and scheduler.running else "stopped"}

    return app


app = create_app()
