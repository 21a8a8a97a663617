from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from newsletter_delivery.config import env_int
from newsletter_delivery.workers.loop import DeliveryWorkerLoop


@dataclass(frozen=True)
class WorkerRuntimeSettings:
    poll_interval_ms: int = 200
    idle_backoff_ms: int = 1000
    error_backoff_ms: int = 2000
    claim_lease_seconds: int = 30
    heartbeat_interval_ms: int = 10000
    concurrency: int = 1


@dataclass
class WorkerRuntimeState:
    started: bool = False
    stopped: bool = False
    ticks_total: int = 0
    claims_total: int = 0
    idle_ticks_total: int = 0
    errors_total: int = 0
    reclaimed_total: int = 0


def worker_runtime_settings_from_env() -> WorkerRuntimeSettings:
    return WorkerRuntimeSettings(
        poll_interval_ms=env_int("WORKER_POLL_INTERVAL_MS", 200),
        idle_backoff_ms=env_int("WORKER_IDLE_BACKOFF_MS", 1000),
        error_backoff_ms=env_int("WORKER_ERROR_BACKOFF_MS", 2000),
        claim_lease_seconds=env_int("WORKER_CLAIM_LEASE_SECONDS", 30),
        heartbeat_interval_ms=env_int("WORKER_HEARTBEAT_INTERVAL_MS", 10000),
        concurrency=env_int("WORKER_CONCURRENCY", 1),
    )


async def run_worker_until_stopped(
    *,
    worker_loop: DeliveryWorkerLoop,
    role: str,
    run_id: str,
    stop_event: asyncio.Event,
    settings: WorkerRuntimeSettings,
    logger: logging.Logger,
    state: WorkerRuntimeState | None = None,
) -> None:
    worker_loop.claim_lease_seconds = settings.claim_lease_seconds
    worker_loop.heartbeat_interval_ms = settings.heartbeat_interval_ms

    if state is not None:
        state.started = True

    log_context = {"role": role, "service": role, "run_id": run_id, "worker_id": worker_loop.worker_id}
    logger.info("worker loop started", extra=log_context)

    while not stop_event.is_set():
        delay_ms = settings.idle_backoff_ms
        try:
            reclaimed = await worker_loop.repository.reclaim_stale_claims()
            if reclaimed:
                logger.warning("stale claims reclaimed", extra={**log_context, "detail": str(reclaimed)})
            did_work = await worker_loop.run_once()
            if state is not None:
                state.ticks_total += 1
                state.reclaimed_total += reclaimed
                if did_work:
                    state.claims_total += 1
                else:
                    state.idle_ticks_total += 1
            delay_ms = settings.poll_interval_ms if did_work else settings.idle_backoff_ms
            logger.debug("worker tick", extra={**log_context, "did_work": str(did_work).lower()})
        except Exception:
            if state is not None:
                state.ticks_total += 1
                state.errors_total += 1
            delay_ms = settings.error_backoff_ms
            logger.exception("worker tick error", extra=log_context)

        try:
            await asyncio.wait_for(stop_event.wait(), timeout=delay_ms / 1000)
        except TimeoutError:
            continue

    logger.info("worker loop stopped", extra=log_context)
    if state is not None:
        state.stopped = True
