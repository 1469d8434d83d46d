import uvicorn
import os
from logging_config import setup_logging, get_logger

# Setup logging before the app module configures it with its own defaults
log_level = os.getenv("LOG_LEVEL", "INFO")
log_file = os.getenv("LOG_FILE", None)
setup_logging(log_level=log_level, log_file=log_file)

logger = get_logger(__name__)


def main():
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", 8000))
    reload = os.getenv("RELOAD", "false").lower() == "true"
    # The relay keeps subscribers in process memory, so it always runs one worker
    logger.info(f"Starting QuickChat relay on {host}:{port}")
    uvicorn.run("app:app", host=host, port=port, reload=reload, workers=1)


if __name__ == "__main__":
    main()
