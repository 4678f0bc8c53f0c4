"""Entry point for the pitch tracker service.

Builds the AppContext, embeds it in the FastAPI application and serves both
on a single asyncio event loop via uvicorn's programmatic API. The context
is started and stopped by the FastAPI lifespan.

Handles SIGINT/SIGTERM for graceful shutdown.
"""

import asyncio
import signal
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from tracker.config import AppSettings
from tracker.context import AppContext
from tracker.logging import get_logger, setup_logging
from tracker.web.app import create_app


def _setup_signal_handlers(server: uvicorn.Server) -> None:
    """Register OS signal handlers that stop the server gracefully.

    Must be called after the asyncio event loop is running.
    """
    logger = get_logger("tracker.main")
    loop = asyncio.get_running_loop()

    def _graceful_handler() -> None:
        logger.info("graceful_shutdown_signal")
        server.should_exit = True

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _graceful_handler)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the context before serving; stop it after the last request."""
    logger = get_logger("tracker.main")
    context: AppContext = app.state.context

    server = getattr(app.state, "server", None)
    if server is not None:
        _setup_signal_handlers(server)

    await context.start()
    logger.info("lifespan_started", database=context.settings.database.path)

    try:
        yield
    finally:
        await context.stop()
        logger.info("pitch_tracker_stopped")


async def run() -> None:
    """Run the pitch tracker HTTP/WebSocket service."""
    settings = AppSettings()
    setup_logging(settings.log_level)
    logger = get_logger("tracker.main")

    context = AppContext(settings)
    app = create_app(lifespan=lifespan)
    app.state.context = context

    logger.info("starting_server", host=settings.api.host, port=settings.api.port)

    config = uvicorn.Config(
        app,
        host=settings.api.host,
        port=settings.api.port,
        log_level="warning",  # structlog carries our own request logging
    )
    server = uvicorn.Server(config)
    app.state.server = server
    await server.serve()


def main() -> None:
    """Synchronous entry point."""
    asyncio.run(run())


if __name__ == "__main__":
    main()
