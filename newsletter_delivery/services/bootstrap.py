from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
import os
import socket
import uuid

from newsletter_delivery.api.handlers.auth import StaticTokenAuthenticator
from newsletter_delivery.api.handlers.deps import ApiDeps
from newsletter_delivery.clients.smtp import SmtpMailGateway
from newsletter_delivery.clients.stub import StubMailGateway
from newsletter_delivery.config import (
    delivery_policy_from_env,
    env_int,
    operator_tokens_from_env,
    smtp_settings_from_env,
)
from newsletter_delivery.domain.contracts import MailGateway, NewsletterRepository
from newsletter_delivery.repositories.postgres import AsyncpgPoolManager, PostgresNewsletterRepository
from newsletter_delivery.repositories.stub import InMemoryNewsletterRepository
from newsletter_delivery.roles import RuntimeRole
from newsletter_delivery.workers.handlers.deps import WorkerDeps
from newsletter_delivery.workers.handlers.factory import build_process_handler
from newsletter_delivery.workers.loop import DeliveryWorkerLoop
from newsletter_delivery.workers.runner import WorkerRuntimeSettings, worker_runtime_settings_from_env


@dataclass
class RuntimeContainer:
    mode: str
    repository: NewsletterRepository
    gateway: MailGateway
    api_deps: ApiDeps
    worker_settings: WorkerRuntimeSettings
    worker_loops: list[DeliveryWorkerLoop] = field(default_factory=list)
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None


def new_worker_id(role: str) -> str:
    return f"{role}-{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def build_runtime_container(role: RuntimeRole) -> RuntimeContainer:
    database_url = os.getenv("DATABASE_URL")
    on_startup: Callable[[], Awaitable[None]] | None = None
    on_shutdown: Callable[[], Awaitable[None]] | None = None
    repository: NewsletterRepository
    if database_url:
        pool_manager = AsyncpgPoolManager(
            dsn=database_url,
            max_size=env_int("DATABASE_POOL_MAX_SIZE", 5),
        )
        repository = PostgresNewsletterRepository(pool_manager=pool_manager)
        on_startup = pool_manager.startup
        on_shutdown = pool_manager.shutdown
        mode = "postgres"
    else:
        repository = InMemoryNewsletterRepository()
        mode = "skeleton"

    smtp_settings = smtp_settings_from_env()
    gateway: MailGateway
    if smtp_settings is not None:
        gateway = SmtpMailGateway(settings=smtp_settings)
    else:
        gateway = StubMailGateway()

    api_deps = ApiDeps(
        repository=repository,
        authenticator=StaticTokenAuthenticator(tokens=operator_tokens_from_env()),
    )

    worker_settings = worker_runtime_settings_from_env()
    worker_loops: list[DeliveryWorkerLoop] = []
    if role.runs_workers:
        process = build_process_handler(role.name, WorkerDeps(repository=repository, gateway=gateway))
        policy = delivery_policy_from_env()
        worker_loops = [
            DeliveryWorkerLoop(
                worker_id=new_worker_id(role.name),
                repository=repository,
                process=process,
                policy=policy,
                claim_lease_seconds=worker_settings.claim_lease_seconds,
                heartbeat_interval_ms=worker_settings.heartbeat_interval_ms,
            )
            for _ in range(worker_settings.concurrency)
        ]

    return RuntimeContainer(
        mode=mode,
        repository=repository,
        gateway=gateway,
        api_deps=api_deps,
        worker_settings=worker_settings,
        worker_loops=worker_loops,
        on_startup=on_startup,
        on_shutdown=on_shutdown,
    )
