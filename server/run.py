# server/run.py
import logging
import logging.config
import os

import uvicorn

from server.logging_config import LOGGING_CONFIG, LOG_LEVEL
from server.restore_server import app


def main():
    # Configure logging before starting uvicorn
    logging.config.dictConfig(LOGGING_CONFIG)
    logger = logging.getLogger(__name__)
    port = int(os.environ.get("PORT", "4200"))
    logger.info(f"Starting restoration server on :{port} with LOG_LEVEL={LOG_LEVEL}")

    uvicorn.run(
        app,
        host="0.0.0.0",
        port=port,
        reload=False,
        log_config=LOGGING_CONFIG,
        log_level=LOG_LEVEL.lower(),
        access_log=True,
    )


if __name__ == "__main__":
    main()
