"""Run the MII engine API under uvicorn.

Usage:
    mii-engine-api
    python -m mii_engine.api.serve
"""

import logging

import uvicorn

from mii_engine.config.settings import Environment, get_settings

logger = logging.getLogger(__name__)


def main() -> None:
    settings = get_settings()
    logger.info("Starting MII engine API on %s:%d", settings.API_HOST, settings.API_PORT)
    uvicorn.run(
        "mii_engine.api.main:app",
        host=settings.API_HOST,
        port=settings.API_PORT,
        reload=settings.ENVIRONMENT == Environment.DEV,
        log_level=settings.LOG_LEVEL.value.lower(),
    )


if __name__ == "__main__":
    main()
