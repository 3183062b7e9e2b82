import logging

from backend.config import LOG_LEVEL

LOG_FORMAT = "%(asctime)s.%(msecs)03d - %(name)s - %(funcName)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S"


def setup_logging(level: str = LOG_LEVEL) -> logging.Logger:
    """Attach a console handler to the ``backend`` logger tree once."""
    logger = logging.getLogger("backend")
    logger.setLevel(getattr(logging, level, logging.INFO))
    if not any(getattr(handler, "_backend_console", False) for handler in logger.handlers):
        console_handler = logging.StreamHandler()
        console_handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT))
        console_handler._backend_console = True
        logger.addHandler(console_handler)
    # Avoid duplicate lines when uvicorn configures the root logger.
    logger.propagate = False
    return logger
