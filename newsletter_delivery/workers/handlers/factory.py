from __future__ import annotations

from newsletter_delivery.domain.models import DeliveryResult, DeliveryTaskClaim
from newsletter_delivery.workers.handlers import deliver
from newsletter_delivery.workers.handlers.deps import WorkerDeps
from newsletter_delivery.workers.loop import ProcessHandler


def build_process_handler(role: str, deps: WorkerDeps) -> ProcessHandler:
    async def _deliver(claim: DeliveryTaskClaim) -> DeliveryResult:
        return await deliver.process_claim(deps, claim=claim)

    handlers: dict[str, ProcessHandler] = {
        "worker-deliver": _deliver,
    }
    handler = handlers.get(role)
    if handler is None:
        raise ValueError(f"No worker handler for role '{role}'")
    return handler
