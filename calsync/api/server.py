"""aiohttp application factory and server runner."""

import asyncio
import contextlib
import logging
import signal
from typing import Any, Optional

from aiohttp import web

from ..routes import register_api_routes, register_feed_routes
from .services import AppServices, build_services

logger = logging.getLogger(__name__)


def create_app(services: AppServices) -> web.Application:
    """Create the web application with feed and API routes.

    Args:
        services: Wired application services

    Returns:
        aiohttp application
    """
    app = web.Application()

    register_feed_routes(app, services)
    register_api_routes(app, services)

    async def _startup(_app: web.Application) -> None:
        await services.database.initialize()

    async def _cleanup(_app: web.Application) -> None:
        logger.info("Application shutdown requested")
        await services.close()

    app.on_startup.append(_startup)
    app.on_cleanup.append(_cleanup)
    return app


async def serve(
    settings: Any,
    enable_scheduler: Optional[bool] = None,
    external_stop_event: Optional[asyncio.Event] = None,
) -> None:
    """Run the HTTP server and background sync until signalled to stop.

    Args:
        settings: Application settings
        enable_scheduler: Overrides ``settings.scheduler_enabled`` when given
        external_stop_event: Stop event owned by the caller; signal handlers are
            only installed when this is None
    """
    stop_event = external_stop_event or asyncio.Event()
    services = build_services(settings)
    app = create_app(services)

    runner = web.AppRunner(app)
    await runner.setup()
    site = web.TCPSite(runner, host=settings.host, port=settings.port)
    await site.start()
    logger.info("Server started on %s:%d", settings.host, settings.port)

    scheduler_task = None
    if settings.scheduler_enabled if enable_scheduler is None else enable_scheduler:
        scheduler_task = asyncio.create_task(services.scheduler.run(stop_event))
        logger.debug("Background sync task created: %r", scheduler_task)

    if external_stop_event is None:
        loop = asyncio.get_running_loop()

        def _on_signal() -> None:
            logger.info("Shutdown signal received")
            stop_event.set()

        for sig in (signal.SIGINT, signal.SIGTERM):
            with contextlib.suppress(NotImplementedError):
                loop.add_signal_handler(sig, _on_signal)

    await stop_event.wait()
    logger.info("Stop event received, shutting down")

    if scheduler_task is not None:
        scheduler_task.cancel()
        try:
            await scheduler_task
        except asyncio.CancelledError:
            pass
        except Exception as e:
            logger.warning("Sync task error during shutdown: %s", e)

    await runner.cleanup()
