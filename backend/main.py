import asyncio
import contextlib
import logging
import os

from fastapi import FastAPI

from env_loader import load_env_once
from meta import init_meta_db
from api import (
    approvals_router,
    chat_router,
    conversations_router,
    queue_router,
)
from services.chat_runtime import (
    get_chat_runtime,
    shutdown_chat_runtime,
    start_chat_runtime,
)

logger = logging.getLogger(__name__)

MAINTENANCE_INTERVAL_SECONDS = int(os.getenv("MAINTENANCE_INTERVAL_SECONDS", "60"))

app = FastAPI(title="Agent Transcript Backend")


async def _maintenance_loop(stop_event: asyncio.Event) -> None:
    while not stop_event.is_set():
        try:
            runtime = get_chat_runtime()
            runtime.approval_gate.expire_stale()
            purge_expired = getattr(runtime.counter, "purge_expired", None)
            if purge_expired is not None:
                purge_expired()
        except Exception:
            logger.exception("Maintenance pass failed")

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=MAINTENANCE_INTERVAL_SECONDS)
        except asyncio.TimeoutError:
            continue


@app.on_event("startup")
async def startup() -> None:
    load_env_once()
    init_meta_db()
    await start_chat_runtime()
    stop_event = asyncio.Event()
    app.state.maintenance_stop_event = stop_event
    app.state.maintenance_task = asyncio.create_task(_maintenance_loop(stop_event))


@app.on_event("shutdown")
async def shutdown() -> None:
    stop_event = getattr(app.state, "maintenance_stop_event", None)
    task = getattr(app.state, "maintenance_task", None)
    if stop_event is not None:
        stop_event.set()

    if task is not None:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    await shutdown_chat_runtime()


app.include_router(chat_router)
app.include_router(conversations_router)
app.include_router(approvals_router)
app.include_router(queue_router)


@app.get("/")
async def root():
    return {"message": "Agent transcript backend"}
