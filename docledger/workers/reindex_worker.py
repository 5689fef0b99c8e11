from __future__ import annotations

import asyncio
import logging

from arq.connections import RedisSettings

from docledger.core.config import get_settings
from docledger.core.logging import configure_logging
from docledger.persistence.db import SessionLocal
from docledger.services.documents import DocumentOrchestrator
from docledger.services.maintenance import run_all_maintenance
from docledger.services.reindex.queue import ReindexWakeupPayload, build_reindex_queue
from docledger.services.reindex.worker import ReindexWorker
from docledger.services.storage.object_store import build_object_store


logger = logging.getLogger(__name__)


async def process_reindex_job(ctx, payload: dict) -> int:
    # Wake-ups identify a job for tracing only; the worker drains whatever is due.
    wakeup = ReindexWakeupPayload.model_validate(payload)
    worker: ReindexWorker = ctx["reindex_worker"]
    result = await worker.drain()
    logger.info(
        "reindex_wakeup_handled job_id=%s correlation_id=%s completed=%s",
        wakeup.job_id,
        wakeup.correlation_id,
        result.completed,
    )
    return result.completed


async def _poll_loop(worker: ReindexWorker) -> None:
    # Polling covers lost wake-ups and deployments without Redis dispatch.
    settings = get_settings()
    while True:
        try:
            await worker.drain()
        except Exception as exc:  # noqa: BLE001 - keep polling after transient DB failures
            logger.exception("reindex_poll_failed error=%s", exc)
        await asyncio.sleep(settings.reindex_worker_poll_interval_s)


async def _maintenance_loop(orchestrator: DocumentOrchestrator) -> None:
    settings = get_settings()
    while True:
        try:
            async with SessionLocal() as session:
                await run_all_maintenance(session, orchestrator)
        except Exception as exc:  # noqa: BLE001 - keep maintenance running after transient failures
            logger.exception("maintenance_run_failed error=%s", exc)
        await asyncio.sleep(settings.maintenance_interval_s)


async def _startup(ctx) -> None:
    configure_logging()
    store = build_object_store()
    queue = build_reindex_queue()
    worker = ReindexWorker(store=store, queue=queue, session_factory=SessionLocal)
    orchestrator = DocumentOrchestrator(store=store, queue=queue)
    ctx["object_store"] = store
    ctx["reindex_queue"] = queue
    ctx["reindex_worker"] = worker
    ctx["poll_task"] = asyncio.create_task(_poll_loop(worker))
    ctx["maintenance_task"] = asyncio.create_task(_maintenance_loop(orchestrator))
    logger.info("reindex_worker_started")


async def _shutdown(ctx) -> None:
    # Cancel background loops and release storage clients on exit.
    for key in ("poll_task", "maintenance_task"):
        task = ctx.get(key)
        if task:
            task.cancel()
    store = ctx.get("object_store")
    if store is not None:
        await store.close()
    queue = ctx.get("reindex_queue")
    if queue is not None:
        await queue.close()


class WorkerSettings:
    # Keep worker configuration as class attributes for arq CLI compatibility.
    settings = get_settings()
    redis_settings = RedisSettings.from_dsn(settings.redis_url)
    queue_name = settings.reindex_queue_name
    # Retries are tracked on the jobs table, not by arq.
    max_tries = 1
    functions = [process_reindex_job]
    on_startup = _startup
    on_shutdown = _shutdown
