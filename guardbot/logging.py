import logging
from typing import Union

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Third-party loggers that log every request at INFO
NOISY_LOGGERS = ("httpx", "telegram.ext.Updater")


def resolve_level(level: Union[str, int, None]) -> int:
    """'debug' / 'INFO' / 10 -> logging level int; unknown names fall back to INFO."""
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(str(level or "INFO").upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(level: Union[str, int, None] = None) -> logging.Logger:
    level = resolve_level(level)
    logging.basicConfig(format=LOG_FORMAT, level=level)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logger = logging.getLogger("guardbot")
    logger.setLevel(level)
    return logger
