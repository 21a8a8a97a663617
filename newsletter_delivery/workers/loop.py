from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import logging

from newsletter_delivery.domain.contracts import NewsletterRepository
from newsletter_delivery.domain.error_taxonomy import resolve_delivery_error
from newsletter_delivery.domain.errors import DomainInvariantError, StoreUnavailableError
from newsletter_delivery.domain.lifecycle import DeliveryPolicy
from newsletter_delivery.domain.models import DeliveryResult, DeliveryStatus, DeliveryTaskClaim

ProcessHandler = Callable[[DeliveryTaskClaim], Awaitable[DeliveryResult]]
logger = logging.getLogger("newsletter")


@dataclass
class DeliveryWorkerLoop:
    worker_id: str
    repository: NewsletterRepository
    process: ProcessHandler
    policy: DeliveryPolicy = field(default_factory=DeliveryPolicy)
    claim_lease_seconds: int = 30
    heartbeat_interval_ms: int = 10000

    async def run_once(self) -> bool:
        claim = await self.repository.claim_next(
            worker_id=self.worker_id,
            lease_seconds=self.claim_lease_seconds,
        )
        if claim is None:
            return False

        lease_lost = False
        stop_heartbeat = asyncio.Event()

        async def _heartbeat_loop() -> None:
            nonlocal lease_lost
            interval_seconds = max(self.heartbeat_interval_ms, 1) / 1000
            while not stop_heartbeat.is_set():
                try:
                    await asyncio.wait_for(stop_heartbeat.wait(), timeout=interval_seconds)
                    break
                except TimeoutError:
                    pass

                try:
                    heartbeat_ok = await self.repository.heartbeat_claim(
                        task_id=claim.task_id,
                        worker_id=self.worker_id,
                        lease_seconds=self.claim_lease_seconds,
                    )
                except StoreUnavailableError as exc:
                    # The lease may still be valid; try again on the next interval.
                    logger.warning(
                        "claim heartbeat failed",
                        extra={"worker_id": self.worker_id, "task_id": claim.task_id, "detail": str(exc)},
                    )
                    continue
                if not heartbeat_ok:
                    lease_lost = True
                    stop_heartbeat.set()
                    break

        heartbeat_task = asyncio.create_task(_heartbeat_loop())
        try:
            result = await self.process(claim)
        finally:
            stop_heartbeat.set()
            await heartbeat_task

        if lease_lost:
            raise DomainInvariantError("claim ownership is stale")

        error_code = None
        retry_delay_seconds = 0.0
        if not result.success:
            error_code = resolve_delivery_error(result.error_code or "internal_error")
            if result.retryable:
                retry_delay_seconds = self.policy.backoff_seconds(claim.attempt)

        status = await self.repository.finalize(
            task_id=claim.task_id,
            worker_id=self.worker_id,
            success=result.success,
            retryable=result.retryable,
            detail=result.detail,
            error_code=error_code,
            max_attempts=self.policy.max_attempts,
            retry_delay_seconds=retry_delay_seconds,
        )

        log_context = {
            "worker_id": self.worker_id,
            "issue_id": claim.issue_id,
            "task_id": claim.task_id,
            "status": str(status),
        }
        if status == DeliveryStatus.SUCCEEDED:
            logger.info("newsletter delivered", extra=log_context)
        elif status == DeliveryStatus.PENDING:
            logger.warning(
                "delivery attempt failed, retry scheduled",
                extra={**log_context, "error_code": error_code, "detail": result.detail},
            )
        elif status == DeliveryStatus.FAILED_TERMINAL:
            logger.error(
                "delivery failed permanently",
                extra={**log_context, "error_code": error_code, "detail": result.detail},
            )
        return True
