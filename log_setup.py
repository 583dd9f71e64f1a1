import logging

import cert_config

LOG_FORMAT = "%(asctime)s - %(levelname)s - [%(name)s] %(message)s"

# Libraries that log every request at INFO.
QUIET_LOGGERS = ("httpx", "httpcore")


def setup_logging(level: str = cert_config.LOG_LEVEL) -> logging.Logger:
    """Attach one stream handler to the root logger and set its level.

    Unknown level names fall back to INFO. Calling it again only changes
    the level.
    """
    root = logging.getLogger()
    if not any(getattr(handler, "_cert_handler", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._cert_handler = True
        root.addHandler(handler)

    resolved = logging.getLevelName(level.upper())
    root.setLevel(resolved if isinstance(resolved, int) else logging.INFO)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root


def get_logger(name: str) -> logging.Logger:
    if not logging.getLogger().handlers:
        setup_logging()
    return logging.getLogger(name)
