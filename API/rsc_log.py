import logging

from rsc_errors import ValidationError, redact_sensitive_text

# Finer than DEBUG; marks entry into public operations.
TRACE = 5
logging.addLevelName(TRACE, "TRACE")

ROOT_LOGGER = "rsc"

_LEVELS = {
    "TRACE": TRACE,
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARN": logging.WARNING,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
}


class RedactingFormatter(logging.Formatter):
    """Formatter that masks credentials in the rendered line."""

    def format(self, record: logging.LogRecord) -> str:
        return redact_sensitive_text(super().format(record))


def parse_level(level) -> int | None:
    """
    Map a level name or number to a logging level. Returns None for "off".
    """
    if isinstance(level, int) and not isinstance(level, bool):
        return level
    name = str(level or "").strip().upper()
    if name in ("OFF", "NONE", "DISABLED"):
        return None
    if name not in _LEVELS:
        raise ValidationError(f"invalid log level: {level!r}")
    return _LEVELS[name]


def configure_logging(level="WARNING", force: bool = False) -> logging.Logger:
    """
    Install one stream handler on the "rsc" logger. Calling again replaces
    the handler installed by the previous call; handlers added by the
    application are left alone unless `force` is set.
    """
    logger = logging.getLogger(ROOT_LOGGER)
    for handler in list(logger.handlers):
        if force or getattr(handler, "_rsc_handler", False):
            logger.removeHandler(handler)

    lvl = parse_level(level)
    if lvl is None:
        null = logging.NullHandler()
        null._rsc_handler = True
        logger.addHandler(null)
        logger.setLevel(logging.CRITICAL + 1)
        logger.propagate = False
        return logger

    handler = logging.StreamHandler()
    handler._rsc_handler = True
    handler.setFormatter(RedactingFormatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    logger.addHandler(handler)
    logger.setLevel(lvl)
    logger.propagate = False
    return logger
