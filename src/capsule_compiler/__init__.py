# Capsule compiler package init
import logging
import os

# Client libraries that log every request at INFO/DEBUG.
NOISY_LOGGERS = ("httpx", "httpcore", "urllib3", "requests")


def _level(value, default):
    level = getattr(logging, value.upper(), None) if value else None
    return level if isinstance(level, int) else default


def _configure_logging() -> None:
    level = _level(os.getenv("CAPSULE_LOG_LEVEL"), logging.INFO)
    logger = logging.getLogger("capsule")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[CAPSULE][%(levelname)s][%(name)s] %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(level)
    logging.getLogger("capsule.llm").setLevel(_level(os.getenv("CAPSULE_LLM_LOG_LEVEL"), level))

    # Transport chatter stays at WARNING unless explicitly asked for.
    transport_level = _level(os.getenv("CAPSULE_HTTP_LOG_LEVEL"), logging.WARNING)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(transport_level)


_configure_logging()
