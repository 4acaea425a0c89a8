import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

import app.models  # ensure models are registered
from app.core import config
from app.core.clock import SystemClock
from app.core.logging_config import setup_logging
from app.utils.database import engine, Base, SessionLocal
from app.initial_data import init_seed
from app.services.errors import InvariantViolation, LoanRejection, TransientInfrastructureFailure
from app.services.notifications import build_notifier
from app.services.popular_books import PopularBooksCache
from app.services.scheduler import build_scheduler

from app.routers import (
    loans_router,
    settlements_router,
    reports_router,
    jobs_router,
    settings_router,
    admin_router,
)

setup_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="Library Loan Service", version="1.0")

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=[
        "http://localhost:8080",
        "http://127.0.0.1:8080",
    ],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Routers
app.include_router(loans_router.router)
app.include_router(settlements_router.router)
app.include_router(reports_router.router)
app.include_router(jobs_router.router)
app.include_router(settings_router.router)
app.include_router(admin_router.router)

# Shared collaborators, owned by the app
app.state.clock = SystemClock()
app.state.notifier = build_notifier()
app.state.popular_cache = PopularBooksCache(config.POPULAR_CACHE_TTL_SECONDS, app.state.clock)
app.state.scheduler = build_scheduler(SessionLocal, app.state.clock, app.state.notifier)


# -------------------------------------------------
# Error mapping
# -------------------------------------------------
@app.exception_handler(LoanRejection)
async def loan_rejection_handler(request: Request, exc: LoanRejection):
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(InvariantViolation)
async def invariant_violation_handler(request: Request, exc: InvariantViolation):
    logger.critical("Invariant violation on %s %s: %s %s", request.method, request.url.path, exc, exc.context)
    return JSONResponse(
        status_code=500,
        content={"code": "internal_error", "message": "The request could not be completed."},
    )


@app.exception_handler(TransientInfrastructureFailure)
async def transient_failure_handler(request: Request, exc: TransientInfrastructureFailure):
    return JSONResponse(
        status_code=503,
        content={"code": "temporarily_unavailable", "message": "Please try again later."},
    )


@app.exception_handler(SQLAlchemyError)
async def database_error_handler(request: Request, exc: SQLAlchemyError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=503,
        content={"code": "temporarily_unavailable", "message": "Please try again later."},
    )


@app.on_event("startup")
def on_startup():
    # DEV ONLY: no migrations yet
    Base.metadata.create_all(bind=engine)

    logger.info("Running initial database seeding")
    init_seed()
    settlements_router.settlement_token_configured()

    if config.SCHEDULER_ENABLED:
        app.state.scheduler.start()
    else:
        logger.info("Reconciliation scheduler disabled")


@app.on_event("shutdown")
def on_shutdown():
    app.state.scheduler.stop()


@app.get("/")
def root():
    return {"message": "Library Loan Service is running"}
