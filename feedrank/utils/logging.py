import logging
import sys

from feedrank.config import settings

_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ("httpx", "httpcore", "telegram", "aiosqlite")


def setup_logging(level: str | None = None) -> None:
    root = logging.getLogger()
    if any(getattr(h, "_feedrank", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    handler._feedrank = True  # type: ignore[attr-defined]

    root.addHandler(handler)
    root.setLevel((level or settings.log_level).upper())

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
