"""
FastAPI + Uvicorn ASGI application for Kubernetes deployment.

Serves the certificate authority, certificate login and OAuth2 endpoints,
with health check endpoints and a background cleanup scheduler. Uvicorn
serves this app with graceful shutdown (SIGTERM → drain + exit).

Architecture:
  - FastAPI: endpoints in pki_auth.routes, CORS middleware, health checks here
  - Uvicorn: production ASGI server (handles signals, graceful shutdown)
  - APScheduler: purges expired records in a background thread
  - K8s health checks: liveness (services built, scheduler thread alive) + readiness

Entry point for production:
    uvicorn pki_auth.asgi:create_app --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import threading
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any

import structlog
from apscheduler.schedulers.blocking import BlockingScheduler
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from pki_auth import __version__
from pki_auth.config import AppSettings
from pki_auth.main import Services, _create_services, configure_structlog
from pki_auth.routes import router, validation_error_response
from pki_auth.scheduler import create_scheduler

log = structlog.get_logger()


# ─────────────────────── Runtime State ───────────────────────
# Set during app startup and used for health checks.


@dataclass
class RuntimeState:
    services: Services | None = None
    scheduler: BlockingScheduler | None = None
    scheduler_thread: threading.Thread | None = None
    scheduler_started: bool = False
    error_message: str | None = None

    @property
    def scheduler_running(self) -> bool:
        return self.scheduler_thread is not None and self.scheduler_thread.is_alive()


def _start_scheduler(state: RuntimeState, services: Services) -> None:
    scheduler = create_scheduler(
        cleanup_fn=services.purge_expired,
        cron=services.settings.scheduler.cron,
        run_on_startup=False,
        register_signals=False,
    )

    def run_scheduler() -> None:
        """Run scheduler in background thread (blocking)."""
        try:
            state.scheduler_started = True
            log.info("asgi.scheduler_thread_started", cron=services.settings.scheduler.cron)
            scheduler.start()
        except Exception as e:
            state.error_message = f"Scheduler error: {e}"
            log.error("asgi.scheduler_error", error=state.error_message)

    state.scheduler = scheduler
    state.scheduler_thread = threading.Thread(target=run_scheduler, name="pki-auth-cleanup", daemon=True)
    state.scheduler_thread.start()


def _stop_scheduler(state: RuntimeState) -> None:
    if state.scheduler is not None:
        try:
            state.scheduler.shutdown(wait=True)
            log.info("asgi.scheduler_shutdown_complete")
        except Exception as e:
            log.warning("asgi.scheduler_shutdown_error", error=str(e))

    # Wait for thread to finish (with timeout)
    if state.scheduler_thread and state.scheduler_thread.is_alive():
        state.scheduler_thread.join(timeout=5.0)
        if state.scheduler_thread.is_alive():
            log.warning("asgi.scheduler_thread_timeout", timeout_seconds=5.0)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """
    FastAPI lifespan context manager — runs on startup and shutdown.

    Startup: build the services (unless injected) and start the cleanup scheduler.
    Shutdown: gracefully stop scheduler and thread.
    """
    state: RuntimeState = app.state.runtime
    settings: AppSettings = app.state.settings

    log.info("asgi.startup", storage=settings.storage, public_url=settings.public_url)

    if state.services is None:
        try:
            state.services = _create_services(settings)
        except Exception as e:
            state.error_message = f"Failed to initialize services: {e}"
            log.error("asgi.init_error", error=state.error_message)
            raise
    app.state.services = state.services

    if settings.scheduler.enabled:
        _start_scheduler(state, state.services)

    log.info("asgi.startup_complete")

    yield  # ← App is running here; Uvicorn handles requests

    # ──── Shutdown ────
    log.info("asgi.shutdown", reason="SIGTERM or server stop")
    _stop_scheduler(state)
    log.info("asgi.shutdown_complete")


# ─────────────────────── FastAPI Application ───────────────────────


def create_app(settings: AppSettings | None = None, services: Services | None = None) -> FastAPI:
    """
    Build the application.

    Settings are loaded from the environment unless given; a configuration
    error raises here, before the server accepts connections. Pre-built
    services (tests) are used as-is instead of being created at startup.
    """
    if settings is None:
        settings = services.settings if services is not None else AppSettings()
    configure_structlog(settings.log_level)

    app = FastAPI(
        title="pki-auth",
        description="Client-certificate authority with certificate login and OAuth2 authorization server",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.runtime = RuntimeState(services=services)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors.allowed_origins,
        allow_origin_regex=settings.cors.origin_regex(),
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Admin-Secret"],
    )

    @app.exception_handler(RequestValidationError)
    async def invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        return validation_error_response(list(exc.errors()))

    app.include_router(router)
    _add_health_checks(app)
    return app


def _add_health_checks(app: FastAPI) -> None:
    @app.get("/health")
    async def health() -> JSONResponse:
        """
        Kubernetes liveness check.

        Returns 503 if startup failed or the enabled scheduler thread died.
        """
        state: RuntimeState = app.state.runtime
        if state.error_message:
            log.warning("health.check_failed", error=state.error_message)
            return JSONResponse(status_code=503, content={"status": "unhealthy", "error": state.error_message})

        if app.state.settings.scheduler.enabled and state.scheduler_started and not state.scheduler_running:
            return JSONResponse(
                status_code=503,
                content={"status": "unhealthy", "reason": "scheduler thread not running"},
            )

        return JSONResponse(status_code=200, content={"status": "healthy"})

    @app.get("/ready")
    async def ready() -> JSONResponse:
        """
        Kubernetes readiness check — 200 once the services are wired.

        An uninitialized CA does not make the service unready: /admin/ca/init
        must stay reachable.
        """
        state: RuntimeState = app.state.runtime
        if state.services is None:
            return JSONResponse(status_code=503, content={"status": "starting"})
        if state.error_message:
            return JSONResponse(status_code=503, content={"status": "error", "error": state.error_message})
        return JSONResponse(
            status_code=200,
            content={
                "status": "ready",
                "ca_initialized": state.services.authority.get_signing_ca().is_success(),
            },
        )

    @app.get("/info")
    async def info() -> dict[str, Any]:
        state: RuntimeState = app.state.runtime
        return {
            "name": "pki-auth",
            "version": __version__,
            "storage": app.state.settings.storage,
            "scheduler_running": state.scheduler_running,
            "scheduler_started": state.scheduler_started,
            "has_error": state.error_message is not None,
        }


if __name__ == "__main__":
    # For local testing: python -m pki_auth.asgi
    import uvicorn

    uvicorn.run(
        "pki_auth.asgi:create_app",
        factory=True,
        host="0.0.0.0",
        port=8000,
        reload=False,
        log_level="info",
    )
