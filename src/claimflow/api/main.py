"""Claimflow FastAPI application factory."""

from __future__ import annotations

import logging

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError

from claimflow import __version__
from claimflow.api.errors import (
    claimflow_error_handler,
    generic_exception_handler,
    http_exception_handler,
    request_validation_error_handler,
)
from claimflow.api.middleware.request_id import RequestIdMiddleware
from claimflow.api.routes.claims import router as claims_router
from claimflow.api.routes.health import router as health_router
from claimflow.api.routes.metrics import router as metrics_router
from claimflow.api.routes.patient_history import router as patient_history_router
from claimflow.api.routes.tenancy import router as tenancy_router
from claimflow.cache import CacheLayer, create_cache_layer
from claimflow.errors import ClaimflowError
from claimflow.jobs.dispatch import EventDispatchService
from claimflow.jobs.queue import InMemoryJobQueue, RedisJobQueue, create_job_queue
from claimflow.jobs.worker import ReconciliationWorker
from claimflow.observability.tracing import configure_tracing, instrument_fastapi
from claimflow.services.claims import ClaimService
from claimflow.services.patient_history import PatientHistoryService

logger = logging.getLogger(__name__)


def create_app(
    cache: CacheLayer | None = None,
    job_queue: InMemoryJobQueue | RedisJobQueue | None = None,
    run_worker: bool | None = None,
) -> FastAPI:
    """Create and configure the Claimflow FastAPI application.

    Args:
        cache: Claim cache. If None, built from the environment.
        job_queue: Reconciliation queue. If None, built from the environment.
        run_worker: Run a ReconciliationWorker inside the API process. Defaults
            to True for the process-local queue, since no other process can
            consume it, and False for Redis, where `claimflow worker` does.

    Returns:
        Configured FastAPI application instance.
    """
    app = FastAPI(
        title="Claimflow API",
        description="Tenant-scoped insurance claim lifecycle service",
        version=__version__,
    )

    cache = cache if cache is not None else create_cache_layer()
    job_queue = job_queue if job_queue is not None else create_job_queue()
    if run_worker is None:
        run_worker = isinstance(job_queue, InMemoryJobQueue)

    app.state.cache = cache
    app.state.job_queue = job_queue
    app.state.claim_service = ClaimService(cache=cache)
    app.state.patient_history_service = PatientHistoryService(EventDispatchService(job_queue))
    app.state.worker = ReconciliationWorker(job_queue, cache=cache) if run_worker else None

    configure_tracing()

    app.add_middleware(RequestIdMiddleware)

    instrument_fastapi(app)

    @app.on_event("startup")
    async def startup_event() -> None:
        """Start the in-process reconciliation worker, if any."""
        if app.state.worker is not None:
            await app.state.worker.start()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        if app.state.worker is not None:
            await app.state.worker.stop()

    app.add_exception_handler(ClaimflowError, claimflow_error_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_error_handler)
    app.add_exception_handler(PydanticValidationError, request_validation_error_handler)
    app.add_exception_handler(Exception, generic_exception_handler)

    app.include_router(health_router)
    app.include_router(metrics_router)
    app.include_router(tenancy_router)
    app.include_router(claims_router)
    app.include_router(patient_history_router)

    return app
