# run_server.py
import logging
import os

import uvicorn

from app.core.logging_config import setup_logging

setup_logging()
logger = logging.getLogger("run_server")

if __name__ == "__main__":
    host = os.getenv("HOST", "0.0.0.0")
    port = int(os.getenv("PORT", "5001"))
    logger.info("Starting server on %s:%s (cwd=%s)", host, port, os.getcwd())
    try:
        from main import app

        uvicorn.run(app, host=host, port=port, reload=False, log_level="info")
    except Exception:
        logger.exception("Server crashed")
        raise
