"""aiohttp application entrypoint."""
from __future__ import annotations

from pathlib import Path

from aiohttp import web
from aiohttp_cors import ResourceOptions, setup as cors_setup

from event_hub.api.router import setup_routes
from event_hub.db.migrations import create_migration_runner
from event_hub.db.pool import close_pool, init_pool
from event_hub.logging_config import configure_logging
from event_hub.middleware.trace import (
    APP_ID_HEADER,
    REQUEST_ID_HEADER,
    TRACE_ID_HEADER,
    create_trace_middleware,
)
from event_hub.otel import setup_otel
from event_hub.services.dependencies import (
    SERVICES_KEY,
    HubServices,
    close_services,
    init_services,
    start_event_scheduler,
    stop_event_scheduler,
)
from event_hub.settings import settings
from event_hub.workers import maintenance_worker

configure_logging()

PROJECT_ROOT = Path(__file__).resolve().parent.parent.parent

MIGRATION_PATHS = [
    PROJECT_ROOT / "migrations",  # local checkout
    Path("/app/migrations"),  # container
]

_ALLOWED_HEADERS = (
    "Accept",
    "Accept-Language",
    "Content-Language",
    "Content-Type",
    "Authorization",
    TRACE_ID_HEADER,
    REQUEST_ID_HEADER,
    APP_ID_HEADER,
)

_ALLOWED_METHODS = ("GET", "HEAD", "POST", "DELETE", "OPTIONS")

_EXPOSED_HEADERS = (TRACE_ID_HEADER, REQUEST_ID_HEADER)


async def healthcheck(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", "service": settings.app_name, "env": settings.env})


def create_app(
    *,
    services: HubServices | None = None,
    start_workers: bool = True,
) -> web.Application:
    """Build the application.

    With ``services`` the app uses them as-is and never touches the database
    pool; otherwise the pool, migrations and delivery services are set up on
    startup. ``start_workers`` controls the event scheduler and the
    maintenance worker.
    """
    app = web.Application()
    app.middlewares.append(create_trace_middleware(settings.app_name))

    cors = cors_setup(
        app,
        defaults={
            origin: ResourceOptions(
                allow_credentials=True,
                expose_headers=_EXPOSED_HEADERS,
                allow_headers=_ALLOWED_HEADERS,
                allow_methods=_ALLOWED_METHODS,
            )
            for origin in settings.cors_allowed_origins
        },
    )

    app.router.add_get("/health", healthcheck)
    setup_routes(app)

    if services is not None:
        app[SERVICES_KEY] = services
    else:
        app.on_startup.append(init_pool)
        app.on_startup.append(create_migration_runner(MIGRATION_PATHS))

    app.on_startup.append(init_services)
    if start_workers:
        if settings.event_scheduler_enabled:
            app.on_startup.append(start_event_scheduler)
            app.on_cleanup.append(stop_event_scheduler)
        if services is None:
            app.on_startup.append(maintenance_worker.start)
            app.on_cleanup.append(maintenance_worker.stop)

    app.on_cleanup.append(close_services)
    if services is None:
        app.on_cleanup.append(close_pool)

    for route in list(app.router.routes()):
        cors.add(route)

    setup_otel(app)
    return app


def main() -> None:
    web.run_app(create_app(), host=settings.host, port=settings.port)


if __name__ == "__main__":
    main()
