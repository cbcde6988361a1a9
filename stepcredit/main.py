from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from datetime import date
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from prometheus_fastapi_instrumentator import Instrumentator
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from .routers import credits, achievements, rewards
from .db import init_db
from .core.config import get_settings
from .core.errors import StepCreditError
from .core.logger import setup_logger
from .core.nats import nats_connect, nats_close, subscribe_steps, publish_nowait
from .core.redis import close_redis
from .services.step_credit import StepCreditCore, build_core

settings = get_settings()
logger = logging.getLogger(__name__)

async def expire_stale_redemptions(core: StepCreditCore):
    try:
        await core.expire_stale_redemptions()
    except Exception:
        # next tick retries; the job must not kill the scheduler
        logger.exception("redemption expiry sweep failed")

def _step_handler(core: StepCreditCore):
    async def handle_steps(evt: dict):
        # expected keys: user_id, steps, date (optional ISO day), idempotency_key (optional)
        try:
            user_id = str(evt["user_id"])
            steps = int(evt["steps"])
            day = date.fromisoformat(evt["date"]) if evt.get("date") else None
            key = evt.get("idempotency_key")
        except (KeyError, TypeError, ValueError):
            logger.warning("malformed steps event: %r", evt)
            return
        try:
            await core.convert_steps(user_id, steps, day=day, entry_id=key)
        except StepCreditError as exc:
            logger.warning("steps event rejected: %s", exc.message, extra={"user_id": user_id})
    return handle_steps

@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logger(settings.service_name, settings.log_level)
    if settings.store_backend == "sql":
        await init_db()

    core = build_core(settings, publish=publish_nowait if settings.enable_nats_publisher else None)
    if settings.seed_defaults:
        await core.seed_defaults()
    app.state.core = core

    # NATS consumer: steps.recorded -> convert_steps
    if settings.enable_nats_consumer:
        try:
            await nats_connect()
            await subscribe_steps(_step_handler(core))
        except Exception:
            # service still runs without NATS
            logger.exception("NATS consumer not started")

    scheduler = AsyncIOScheduler()
    if settings.enable_scheduler:
        scheduler.add_job(
            expire_stale_redemptions, "interval", args=[core],
            seconds=settings.expiry_sweep_interval_sec, id="expire-redemptions",
        )
        scheduler.start()

    yield

    if scheduler.running:
        scheduler.shutdown(wait=False)
    try:
        await nats_close()
    except Exception:
        logger.exception("NATS drain failed")
    await close_redis()

app = FastAPI(title="step-credit-svc", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origin_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

@app.exception_handler(StepCreditError)
async def step_credit_error_handler(request: Request, exc: StepCreditError):
    if exc.status_code >= 500:
        logger.error("request failed: %s", exc.message, exc_info=exc)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})

app.include_router(credits.router)
app.include_router(achievements.router)
app.include_router(rewards.router)

@app.get("/health")
async def health():
    return {"status": "ok", "service": "step-credit-svc"}

Instrumentator().instrument(app).expose(app)
