import logging

_NOISY_LOGGERS = ("azure", "PIL", "aiosqlite", "sqlalchemy.engine", "multipart")


def configure_logging(level: str = "INFO") -> logging.Logger:
    """Configure the root logger once; safe to call repeatedly."""
    logger = logging.getLogger()
    logger.setLevel(level.upper())

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    else:
        for handler in logger.handlers:
            handler.setFormatter(formatter)

    return logger
