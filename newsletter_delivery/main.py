"""Command-line entrypoint for the newsletter delivery processes.

`--role api` serves the operator publish/report endpoints; `--role
worker-deliver` drains the delivery queue. Both roles expose /health and
/ready. Storage and SMTP are chosen from DATABASE_URL and SMTP_HOST.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import uuid

import uvicorn

from newsletter_delivery.api.http_app import build_app
from newsletter_delivery.config import operator_tokens_from_env
from newsletter_delivery.logging_setup import configure_logging
from newsletter_delivery.roles import SUPPORTED_ROLES, RuntimeRole, validate_role
from newsletter_delivery.services.bootstrap import RuntimeContainer, build_runtime_container

API_PORT = 8000
WORKER_PORT = 8100


def _default_port(role: str) -> int:
    return API_PORT if role == "api" else WORKER_PORT


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="newsletter-delivery",
        description="Run the newsletter publish API or a delivery worker process",
    )
    parser.add_argument("--role", required=True, help=f"Process role: {', '.join(SUPPORTED_ROLES)}")
    parser.add_argument("--host", default=os.getenv("APP_HOST", "0.0.0.0"), help="Bind address for the HTTP server")
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help=f"HTTP port (default {API_PORT} for api, {WORKER_PORT} for workers)",
    )
    parser.add_argument(
        "--dry-run-startup",
        action="store_true",
        help="Build storage, mail gateway and worker wiring from the environment, then exit",
    )
    parser.add_argument(
        "--reload",
        action="store_true",
        help="Restart on source changes (local development only)",
    )
    return parser.parse_args(argv)


def _app_from_container(role: str, run_id: str, container: RuntimeContainer) -> object:
    return build_app(
        role=role,
        run_id=run_id,
        worker_loops=container.worker_loops,
        worker_runtime_settings=container.worker_settings,
        api_deps=container.api_deps,
        on_startup=container.on_startup,
        on_shutdown=container.on_shutdown,
        mode=container.mode,
    )


def _log_wiring(logger: logging.Logger, role: RuntimeRole, run_id: str, container: RuntimeContainer) -> None:
    context = {"role": role.name, "service": role.name, "run_id": run_id}
    logger.info(
        "runtime wiring ready",
        extra={
            **context,
            "detail": (
                f"store={container.mode} gateway={type(container.gateway).__name__} "
                f"worker_loops={len(container.worker_loops)}"
            ),
        },
    )
    if role.name == "api" and not operator_tokens_from_env():
        logger.warning("no operator tokens configured; publish requests will be rejected", extra=context)


def create_runtime_app() -> object:
    """App factory used by uvicorn when --reload is on; the role comes from APP_ROLE."""
    role = validate_role(os.getenv("APP_ROLE", "api"))
    run_id = str(uuid.uuid4())
    configure_logging()
    container = build_runtime_container(role)
    return _app_from_container(role.name, run_id, container)


def run(argv: list[str] | None = None) -> int:
    args = parse_args(argv)

    try:
        role = validate_role(args.role)
    except ValueError as exc:
        sys.stderr.write(f"ERROR: {exc}\n")
        sys.stderr.write(f"Try one of: {', '.join(SUPPORTED_ROLES)}\n")
        return 2

    configure_logging()
    run_id = str(uuid.uuid4())
    logger = logging.getLogger("runtime")
    logger.info("runtime initialized", extra={"role": role.name, "service": role.name, "run_id": run_id})

    # Building the container opens no connections; the pool starts in the app lifespan.
    container = build_runtime_container(role)
    _log_wiring(logger, role, run_id, container)
    if args.dry_run_startup:
        logger.info("dry-run startup complete", extra={"role": role.name, "service": role.name, "run_id": run_id})
        return 0

    port = args.port if args.port is not None else _default_port(role.name)
    if args.reload:
        os.environ["APP_ROLE"] = role.name
        uvicorn.run(
            "newsletter_delivery.main:create_runtime_app",
            host=args.host,
            port=port,
            log_level="warning",
            reload=True,
            factory=True,
        )
        return 0

    app = _app_from_container(role.name, run_id, container)
    uvicorn.run(app, host=args.host, port=port, log_level="warning")
    return 0


if __name__ == "__main__":
    raise SystemExit(run())
