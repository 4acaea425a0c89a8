# app/core/logging_config.py
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from app.core import config

_configured = False


def setup_logging(level: str = None, log_dir: str = None) -> logging.Logger:
    """
    Configure the root logger once:
      - console (simple format)
      - logs/app.log   (everything at `level`)
      - logs/error.log (ERROR and above, with file:line)
    """
    global _configured
    root = logging.getLogger()
    if _configured:
        return root

    log_level = getattr(logging, (level or config.LOG_LEVEL).upper(), logging.INFO)
    root.setLevel(log_level)

    directory = Path(log_dir or config.LOG_DIR)
    directory.mkdir(parents=True, exist_ok=True)

    simple_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )
    detailed_formatter = logging.Formatter(
        "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(message)s"
    )

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(simple_formatter)
    console_handler.setLevel(log_level)

    app_handler = RotatingFileHandler(
        directory / "app.log",
        maxBytes=10485760,  # 10MB
        backupCount=5,
        encoding="utf-8",
    )
    app_handler.setFormatter(detailed_formatter)
    app_handler.setLevel(log_level)

    error_handler = RotatingFileHandler(
        directory / "error.log",
        maxBytes=10485760,
        backupCount=5,
        encoding="utf-8",
    )
    error_handler.setFormatter(detailed_formatter)
    error_handler.setLevel(logging.ERROR)

    root.addHandler(console_handler)
    root.addHandler(app_handler)
    root.addHandler(error_handler)

    _configured = True
    return root
