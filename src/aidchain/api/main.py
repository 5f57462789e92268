"""aidchain API service entry point.

This module provides the application instance for ASGI servers (uvicorn)
and a run() function for direct execution.

The app is created using the factory pattern from aidchain.api.create_app().
"""

import logging

from aidchain.api import create_app

logger = logging.getLogger(__name__)

# Create the application instance for ASGI servers
# This is what uvicorn references: aidchain.api.main:app
app = create_app()


def run() -> None:
    """Run the API server using uvicorn.

    This function is called by the aidchain-api console script
    defined in pyproject.toml.
    """
    import uvicorn

    from aidchain.core.settings import get_settings

    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    logger.info("Starting aidchain API on %s:%d", settings.api_host, settings.api_port)

    uvicorn.run(
        "aidchain.api.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=False,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
