import logging
from typing import Iterable, Union

DEV_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
PROD_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

NOISY_LOGGERS = ("sqlalchemy.engine", "uvicorn.access", "multipart")


def configure_logging(level: Union[str, int] = "INFO", production: bool = False) -> None:
    """Configure the root logger once for the whole application."""
    resolved = _coerce_level(level)
    root = logging.getLogger()
    root.setLevel(resolved)

    if not root.handlers:
        root.addHandler(logging.StreamHandler())

    if resolved > logging.DEBUG:
        for noisy in NOISY_LOGGERS:
            logging.getLogger(noisy).setLevel(logging.WARNING)

    formatter = logging.Formatter(PROD_FORMAT if production else DEV_FORMAT)
    _apply_formatter(root.handlers, formatter)


def _apply_formatter(handlers: Iterable[logging.Handler], formatter: logging.Formatter) -> None:
    for handler in handlers:
        handler.setFormatter(formatter)


def _coerce_level(raw_level) -> int:
    if isinstance(raw_level, int):
        return raw_level
    if isinstance(raw_level, str):
        candidate = raw_level.strip().upper()
        level = logging.getLevelName(candidate)
        if isinstance(level, int):
            return level
    return logging.INFO
