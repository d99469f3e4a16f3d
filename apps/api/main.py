"""
TRUTH Protocol credential issuance - FastAPI Backend
Main application entry point with health checks, API routing and background loops.
"""

import asyncio
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    credentials,
    credits,
    jobs,
)
from services.minting import run_minting_pass
from services.reconciler import run_reconciliation_pass
from services.refunds import run_refund_compensation

logging.basicConfig(level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO))


async def _periodic_minting() -> None:
    interval_seconds = max(int(settings.MINTING_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await run_minting_pass()
            if result.read:
                print(
                    f"⛏️ Minting tick: read={result.read} "
                    f"pending={result.pending} failed={result.failed}"
                )
        except Exception as exc:
            print(f"⚠️ Minting tick failed: {exc}")


async def _periodic_reconciliation() -> None:
    interval_seconds = max(int(settings.CONFIRMATION_INTERVAL_SECONDS), 0)
    if interval_seconds <= 0:
        return
    while True:
        await asyncio.sleep(interval_seconds)
        try:
            result = await run_reconciliation_pass()
            if result.checked or result.refunded:
                print(
                    f"🔗 Confirmation tick: checked={result.checked} confirmed={result.confirmed} "
                    f"failed={result.failed} refunded={result.refunded}"
                )
        except Exception as exc:
            print(f"⚠️ Confirmation tick failed: {exc}")


async def _cancel(task) -> None:
    if task is None:
        return
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting TRUTH Protocol API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        compensation = await run_refund_compensation()
        if compensation.refunded:
            print(f"♻️ Refunded {compensation.refunded} failed credentials after startup.")
    except Exception as exc:
        print(f"⚠️ Startup refund compensation skipped: {exc}")
    minting_task = None
    reconciliation_task = None
    if settings.MINTING_SCHEDULER_ENABLED and int(settings.MINTING_INTERVAL_SECONDS) > 0:
        minting_task = asyncio.create_task(_periodic_minting())
        print(f"📅 Minting loop enabled (every {int(settings.MINTING_INTERVAL_SECONDS)} s).")
    if settings.MINTING_SCHEDULER_ENABLED and int(settings.CONFIRMATION_INTERVAL_SECONDS) > 0:
        reconciliation_task = asyncio.create_task(_periodic_reconciliation())
        print(f"📅 Confirmation loop enabled (every {int(settings.CONFIRMATION_INTERVAL_SECONDS)} s).")
    yield
    # Shutdown
    await _cancel(minting_task)
    await _cancel(reconciliation_task)
    print("👋 Shutting down API...")


app = FastAPI(
    title="TRUTH Protocol API",
    description="Issue soulbound-token credentials against prepaid issuer credits",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credentials.router, prefix="/credentials", tags=["Credentials"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "TRUTH Protocol API",
        "version": "0.1.0",
        "status": "running"
    }
