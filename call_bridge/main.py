"""Bridge server entry point.

Loads configuration from the environment (and an optional .env file),
installs structured logging and process-level error hooks, then serves the
FastAPI application with uvicorn. Uvicorn handles SIGTERM/SIGINT for
graceful shutdown; the app lifespan stops token refresh and closes clients.
"""

import asyncio
import logging
import sys
from types import TracebackType
from typing import Any

import uvicorn
from dotenv import load_dotenv

from call_bridge.app import create_app
from call_bridge.config import BridgeConfig
from call_bridge.observability.logger import configure_logging

logger = logging.getLogger(__name__)


def _log_uncaught_exception(
    exc_type: type[BaseException],
    exc_value: BaseException,
    exc_tb: TracebackType | None,
) -> None:
    """sys.excepthook replacement that routes crashes through logging."""
    if issubclass(exc_type, KeyboardInterrupt):
        sys.__excepthook__(exc_type, exc_value, exc_tb)
        return
    logger.critical(
        "Uncaught exception", exc_info=(exc_type, exc_value, exc_tb)
    )


def _log_loop_exception(
    loop: asyncio.AbstractEventLoop, context: dict[str, Any]
) -> None:
    """Event-loop handler for exceptions no task retrieved."""
    exc = context.get("exception")
    message = context.get("message", "Unhandled exception in event loop")
    if exc is not None:
        logger.error(message, exc_info=(type(exc), exc, exc.__traceback__))
    else:
        logger.error(message)


async def _serve(config: BridgeConfig) -> None:
    """Run the HTTP server until uvicorn receives a shutdown signal."""
    asyncio.get_running_loop().set_exception_handler(_log_loop_exception)
    app = create_app(config)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.host,
            port=config.port,
            log_config=None,
            access_log=False,
        )
    )
    logger.info(
        "Webhook URL: http://%s:%d/yeastar-webhook", config.host, config.port
    )
    await server.serve()


def main() -> None:
    """Start the bridge server."""
    load_dotenv()
    config = BridgeConfig.from_env()
    configure_logging(config.log_level)
    sys.excepthook = _log_uncaught_exception
    logger.info("Call bridge starting on port %d", config.port)

    asyncio.run(_serve(config))


if __name__ == "__main__":
    main()
