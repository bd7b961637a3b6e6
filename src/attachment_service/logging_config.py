"""Process-wide logging setup."""

import logging

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Keep external libraries less verbose unless needed
QUIET_LOGGERS = ("httpx", "httpcore", "botocore", "boto3", "urllib3", "azure")


def configure_logging(level: str = "INFO") -> None:
    """Configure root logging for the service.

    Args:
        level: Log level name for the root logger (e.g. "INFO", "DEBUG")
    """
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        logging.getLogger(__name__).warning(
            f"Unknown log level {level!r}, falling back to INFO"
        )
        numeric_level = logging.INFO

    logging.basicConfig(format=LOG_FORMAT, level=numeric_level, force=True)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
