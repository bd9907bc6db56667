"""Entry point for the scan pipeline API server."""

import uvicorn

from src.api.app import app
from src.utils.config import load_config
from src.utils.logger import get_logger, setup_logging

logger = get_logger(__name__)


def main() -> None:
    """Start the API server on the configured address."""
    config = load_config()
    setup_logging(config.log_level)
    logger.info(
        "Serving scan pipeline on %s:%d (extraction service %s)",
        config.server.host,
        config.server.port,
        config.service.base_url,
    )
    uvicorn.run(app, host=config.server.host, port=config.server.port)


if __name__ == "__main__":
    main()
