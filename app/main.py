import asyncio
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from app.config import settings
from app.database import SessionLocal
from app.logging_config import get_logger, setup_logging
from app.routers import owner_chat, profiles, telegram, whatsapp, widget
from app.services import telegram_service
from app.services.scheduler_service import SCHEDULER_INTERVAL_SECONDS, run_scheduled_jobs

setup_logging(settings.log_level)

app = FastAPI(
    title="Receptionist API",
    description="Multi-tenant AI receptionist: web widget, WhatsApp and Telegram",
    version="0.1.0",
)

cors_env = os.environ.get("CORS_ALLOW_ORIGINS", "*")
cors_origins = [origin.strip() for origin in cors_env.split(",") if origin.strip()]
if not cors_origins:
    cors_origins = ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(widget.router)
app.include_router(whatsapp.router)
app.include_router(telegram.router)
app.include_router(owner_chat.router)
app.include_router(profiles.router)

scheduler_logger = get_logger("scheduler_worker")
_scheduler_task: asyncio.Task | None = None


def _is_env_enabled(value: str | None, default: bool = True) -> bool:
    if value is None:
        return default
    return value.strip().lower() not in {"0", "false", "no", "off"}


def _is_scheduler_enabled() -> bool:
    if os.environ.get("PYTEST_CURRENT_TEST"):
        return False
    return _is_env_enabled(os.environ.get("SCHEDULER_ENABLED"), default=True)


def _run_jobs_once() -> dict:
    db = SessionLocal()
    try:
        return run_scheduled_jobs(db)
    finally:
        db.close()


async def _scheduler_loop() -> None:
    interval_seconds = max(SCHEDULER_INTERVAL_SECONDS, 1.0)
    while True:
        try:
            # Jobs do blocking HTTP and DB work; keep them off the event loop.
            results = await asyncio.to_thread(_run_jobs_once)
            scheduler_logger.info("Scheduler run finished", extra={"context": results})
            await asyncio.sleep(interval_seconds)
        except asyncio.CancelledError:
            break
        except Exception as exc:
            scheduler_logger.error(
                "Scheduler loop failed",
                extra={"context": {"error": str(exc)}},
            )
            await asyncio.sleep(interval_seconds)


@app.on_event("startup")
async def start_scheduler() -> None:
    global _scheduler_task
    if not _is_scheduler_enabled():
        return
    if _scheduler_task is None or _scheduler_task.done():
        _scheduler_task = asyncio.create_task(_scheduler_loop())
        scheduler_logger.info("Scheduler started")


@app.on_event("startup")
async def register_telegram_webhook() -> None:
    if os.environ.get("PYTEST_CURRENT_TEST") or not telegram_service.TELEGRAM_WEBHOOK_BASE_URL:
        return
    await asyncio.to_thread(telegram_service.register_webhook)


@app.on_event("shutdown")
async def stop_scheduler() -> None:
    global _scheduler_task
    if _scheduler_task is None:
        return
    _scheduler_task.cancel()
    try:
        await _scheduler_task
    except asyncio.CancelledError:
        pass
    _scheduler_task = None


@app.get("/health")
async def health():
    return {"status": "ok"}
