"""
Main entry point for the shell command queue daemon.

Loads configuration, starts the daemon and installs signal handlers.
"""

import asyncio
import logging
import os
import signal
import sys

import structlog

from .core.config import ConfigLoader
from .core.errors import ConfigError
from .orchestrator.daemon import Daemon


def configure_logging() -> None:
    """Structured logging, rendered as JSON when LOG_FORMAT=json."""
    level = getattr(logging, os.getenv("LOG_LEVEL", "INFO").upper(), logging.INFO)
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer() if os.getenv("LOG_FORMAT") == "json"
            else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


logger = structlog.get_logger()


async def main() -> int:
    """Run the daemon until a signal or a Shutdown request arrives."""
    config_path = os.getenv("SHELLQUEUE_CONFIG")

    try:
        settings = ConfigLoader(config_path).load()
    except ConfigError as e:
        logger.error("config_invalid", **e.to_dict())
        return 2

    daemon = Daemon(settings)

    # Setup signal handlers
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("shutdown_signal_received")
        daemon.request_shutdown()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await daemon.start()
        await daemon.run()
    except ConfigError as e:
        logger.error("daemon_startup_failed", **e.to_dict())
        return 1
    except Exception:
        logger.exception("daemon_error")
        return 1
    finally:
        await daemon.stop()

    return 0


def run() -> None:
    """Console script entry point."""
    configure_logging()
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
