from __future__ import annotations

from contextlib import asynccontextmanager
import asyncio
from collections.abc import Awaitable, Callable, Sequence
import logging

from fastapi import Depends, FastAPI, Header, HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from newsletter_delivery.api.handlers.auth import bearer_token
from newsletter_delivery.api.handlers.deps import ApiDeps
from newsletter_delivery.api.handlers.newsletters import get_delivery_report_handler, publish_newsletter_handler
from newsletter_delivery.api.schemas import (
    DeliveryReportResponse,
    ErrorResponse,
    HealthResponse,
    PublishNewsletterRequest,
    PublishNewsletterResponse,
    ReadyResponse,
    WorkerMetrics,
)
from newsletter_delivery.domain.errors import (
    DomainValidationError,
    RequestInProgressError,
    StoreUnavailableError,
    UnauthorizedError,
)
from newsletter_delivery.workers.loop import DeliveryWorkerLoop
from newsletter_delivery.workers.runner import (
    WorkerRuntimeSettings,
    WorkerRuntimeState,
    run_worker_until_stopped,
    worker_runtime_settings_from_env,
)

UNAUTHORIZED_HEADERS = {"WWW-Authenticate": 'Bearer realm="publish"'}


def _validation_detail(exc: RequestValidationError) -> str:
    messages = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        message = error.get("msg", "invalid value")
        messages.append(f"{location}: {message}" if location else message)
    return "; ".join(messages) or "invalid request"


def build_app(
    role: str,
    run_id: str,
    worker_loops: Sequence[DeliveryWorkerLoop] = (),
    worker_runtime_settings: WorkerRuntimeSettings | None = None,
    api_deps: ApiDeps | None = None,
    on_startup: Callable[[], Awaitable[None]] | None = None,
    on_shutdown: Callable[[], Awaitable[None]] | None = None,
    mode: str = "skeleton",
) -> FastAPI:
    logger = logging.getLogger("runtime")
    worker_states: list[WorkerRuntimeState] = []
    worker_tasks: list[asyncio.Task[None]] = []

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        del app
        stop_event = asyncio.Event()

        logger.info(
            "role started",
            extra={"role": role, "service": role, "run_id": run_id},
        )

        if on_startup is not None:
            await on_startup()

        if worker_loops:
            settings = worker_runtime_settings or worker_runtime_settings_from_env()
            for worker_loop in worker_loops:
                state = WorkerRuntimeState()
                worker_states.append(state)
                worker_tasks.append(
                    asyncio.create_task(
                        run_worker_until_stopped(
                            worker_loop=worker_loop,
                            role=role,
                            run_id=run_id,
                            stop_event=stop_event,
                            settings=settings,
                            logger=logger,
                            state=state,
                        )
                    )
                )

        yield

        stop_event.set()
        if worker_tasks:
            await asyncio.gather(*worker_tasks)

        if on_shutdown is not None:
            await on_shutdown()

        logger.info(
            "role stopped",
            extra={"role": role, "service": role, "run_id": run_id},
        )

    app = FastAPI(title="newsletter-delivery", version="0.1.0", lifespan=lifespan)

    @app.exception_handler(RequestValidationError)
    async def request_validation_error(request: Request, exc: RequestValidationError) -> JSONResponse:
        del request
        return JSONResponse(status_code=400, content={"detail": _validation_detail(exc)})

    def require_api_deps() -> ApiDeps:
        if api_deps is None:
            raise HTTPException(status_code=503, detail="api dependencies are not available")
        return api_deps

    def require_operator(
        authorization: str | None = Header(default=None),
        deps: ApiDeps = Depends(require_api_deps),  # noqa: B008
    ) -> str:
        try:
            return deps.authenticator.authenticate(bearer_token(authorization))
        except UnauthorizedError as exc:
            raise HTTPException(status_code=401, detail=str(exc), headers=UNAUTHORIZED_HEADERS) from exc

    @app.get("/health", response_model=HealthResponse, tags=["System"])
    async def health() -> HealthResponse:
        return HealthResponse(status="ok", role=role, mode=mode)

    @app.get("/ready", response_model=ReadyResponse, tags=["System"])
    async def ready() -> ReadyResponse:
        worker_loop_enabled = bool(worker_loops)
        worker_loop_ready = True
        if worker_loop_enabled:
            worker_loop_ready = (
                len(worker_states) == len(worker_loops)
                and all(state.started for state in worker_states)
                and all(not task.done() for task in worker_tasks)
            )

        return ReadyResponse(
            status="ready",
            role=role,
            mode=mode,
            worker_loop_enabled=worker_loop_enabled,
            worker_loop_ready=worker_loop_ready,
            worker_loops=len(worker_loops),
            worker_metrics=WorkerMetrics(
                started=bool(worker_states) and all(state.started for state in worker_states),
                stopped=bool(worker_states) and all(state.stopped for state in worker_states),
                ticks_total=sum(state.ticks_total for state in worker_states),
                claims_total=sum(state.claims_total for state in worker_states),
                idle_ticks_total=sum(state.idle_ticks_total for state in worker_states),
                errors_total=sum(state.errors_total for state in worker_states),
                reclaimed_total=sum(state.reclaimed_total for state in worker_states),
            ),
        )

    @app.post(
        "/admin/newsletters",
        status_code=202,
        response_model=PublishNewsletterResponse,
        responses={
            400: {"model": ErrorResponse},
            401: {"model": ErrorResponse},
            409: {"model": ErrorResponse},
            503: {"model": ErrorResponse},
        },
        tags=["Newsletters"],
    )
    async def publish_newsletter(
        request: PublishNewsletterRequest,
        owner_id: str = Depends(require_operator),  # noqa: B008
        deps: ApiDeps = Depends(require_api_deps),  # noqa: B008
    ) -> Response:
        try:
            outcome = await publish_newsletter_handler(
                owner_id=owner_id,
                idempotency_key=request.idempotency_key,
                title=request.title,
                html_content=request.html_content,
                text_content=request.text_content,
                api_deps=deps,
            )
        except DomainValidationError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        except RequestInProgressError as exc:
            raise HTTPException(status_code=409, detail=str(exc)) from exc
        except StoreUnavailableError as exc:
            logger.error(
                "issuance store unavailable",
                extra={"role": role, "run_id": run_id, "owner_id": owner_id, "detail": str(exc)},
            )
            raise HTTPException(status_code=503, detail="newsletter store is unavailable") from exc

        saved = outcome.response
        return Response(content=saved.body, status_code=saved.status_code, headers=dict(saved.headers))

    @app.get(
        "/admin/newsletters/{issue_id}/deliveries",
        response_model=DeliveryReportResponse,
        responses={401: {"model": ErrorResponse}, 404: {"model": ErrorResponse}, 503: {"model": ErrorResponse}},
        tags=["Newsletters"],
    )
    async def get_delivery_report(
        issue_id: str,
        owner_id: str = Depends(require_operator),  # noqa: B008
        deps: ApiDeps = Depends(require_api_deps),  # noqa: B008
    ) -> DeliveryReportResponse:
        del owner_id
        try:
            report = await get_delivery_report_handler(issue_id=issue_id, api_deps=deps)
        except StoreUnavailableError as exc:
            raise HTTPException(status_code=503, detail="newsletter store is unavailable") from exc
        if report is None:
            raise HTTPException(status_code=404, detail="newsletter issue not found")
        return report

    return app
