import asyncio

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.orm import Session

from sari.config import settings
from sari.database import get_db
from sari.logging_config import get_logger, setup_logging
from sari.routers import admin, webhook
from sari.services.polling_service import PollingSupervisor, is_polling_enabled

setup_logging(settings.log_level, json_output=not settings.debug)

app = FastAPI(
    title="Sari API",
    description="WhatsApp message ingestion and auto-reply service",
    version="0.1.0",
)

app.include_router(webhook.router)
app.include_router(admin.router)

polling_logger = get_logger("polling_supervisor")
_polling_supervisor: PollingSupervisor | None = None
_polling_task: asyncio.Task | None = None


@app.on_event("startup")
async def start_polling() -> None:
    global _polling_supervisor, _polling_task
    if not is_polling_enabled():
        return
    if _polling_task is None or _polling_task.done():
        _polling_supervisor = PollingSupervisor()
        _polling_task = asyncio.create_task(_polling_supervisor.run())
        polling_logger.info("Polling supervisor started")


@app.on_event("shutdown")
async def stop_polling() -> None:
    global _polling_supervisor, _polling_task
    if _polling_task is None:
        return
    _polling_task.cancel()
    try:
        await _polling_task
    except asyncio.CancelledError:
        pass
    if _polling_supervisor is not None:
        await _polling_supervisor.stop()
    _polling_task = None
    _polling_supervisor = None


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/db-check")
def db_check(db: Session = Depends(get_db)):
    db.execute(text("SELECT 1"))
    return {"status": "ok"}
