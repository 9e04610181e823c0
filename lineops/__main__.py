"""
Service entry point.
Runs the analytics API together with the live stream synchronizer.
"""
import sys

import uvicorn

from lineops.core.config import settings
from lineops.core.logging import configure_logging, get_logger


# Configure logging
configure_logging()
logger = get_logger(__name__)


def main() -> None:
    logger.info("lineops.starting", host=settings.app_host, port=settings.app_port)

    try:
        # uvicorn installs its own SIGTERM/SIGINT handlers and runs the lifespan shutdown
        uvicorn.run(
            "lineops.main:app",
            host=settings.app_host,
            port=settings.app_port,
            log_config=None,
        )
        logger.info("lineops.shutdown_complete")
    except Exception as e:
        logger.error(
            "lineops.fatal_error",
            error=str(e),
            exc_info=True
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
