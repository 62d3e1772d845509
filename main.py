"""Entry point — run the scheduler service (FastAPI app + tick loop)."""

import logging
import os

import uvicorn
from dotenv import load_dotenv

from core.logging_config import setup_json_logging

logger = logging.getLogger(__name__)


def serve(host: str = "127.0.0.1", port: int = 8000, config_path: str | None = None) -> None:
    """Start the API server; the app lifespan registers tasks and starts ticking.

    LOG_LEVEL controls verbosity; SCHEDULER_CONFIG / SCHEDULER_DATABASE_URL
    are read when the app starts.
    """
    load_dotenv()
    if config_path:
        os.environ["SCHEDULER_CONFIG"] = config_path
    setup_json_logging(os.getenv("LOG_LEVEL", "INFO"))
    logger.info("Starting scheduler service", extra={"host": host, "port": port})
    # log_config=None keeps uvicorn on the JSON root handler
    uvicorn.run("api.server:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    serve(
        host=os.getenv("SCHEDULER_HOST", "127.0.0.1"),
        port=int(os.getenv("SCHEDULER_PORT", "8000")),
    )
