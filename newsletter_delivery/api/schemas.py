from __future__ import annotations

from pydantic import BaseModel, Field

from newsletter_delivery.domain.idempotency import MAX_IDEMPOTENCY_KEY_LENGTH

ISSUE_ID_PATTERN = r"^iss_[0-9A-HJKMNP-TV-Z]{26}$"


class ErrorResponse(BaseModel):
    detail: str


class WorkerMetrics(BaseModel):
    started: bool
    stopped: bool
    ticks_total: int
    claims_total: int
    idle_ticks_total: int
    errors_total: int
    reclaimed_total: int


class HealthResponse(BaseModel):
    status: str
    role: str
    mode: str


class ReadyResponse(BaseModel):
    status: str
    role: str
    mode: str
    worker_loop_enabled: bool
    worker_loop_ready: bool
    worker_loops: int
    worker_metrics: WorkerMetrics


class PublishNewsletterRequest(BaseModel):
    title: str = Field(min_length=1)
    html_content: str = Field(min_length=1)
    text_content: str = Field(min_length=1)
    idempotency_key: str = Field(min_length=1, max_length=MAX_IDEMPOTENCY_KEY_LENGTH - 1)


class PublishNewsletterResponse(BaseModel):
    issue_id: str = Field(pattern=ISSUE_ID_PATTERN)
    status: str
    deliveries_enqueued: int


class DeliveryStatusCounts(BaseModel):
    pending: int
    in_progress: int
    succeeded: int
    failed_terminal: int


class FailedDelivery(BaseModel):
    task_id: int
    subscriber_email: str
    attempt_count: int
    last_error_code: str | None = None
    last_error_message: str | None = None


class DeliveryReportResponse(BaseModel):
    issue_id: str
    total: int
    counts: DeliveryStatusCounts
    failed: list[FailedDelivery]
