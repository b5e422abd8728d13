# LinkChat package init
import logging
import os


def _level(var: str, default: int) -> int:
    name = (os.getenv(var) or "").strip().upper()
    return getattr(logging, name, default) if name else default


def _configure_logging() -> None:
    logger = logging.getLogger("linkchat")
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("[LINKCHAT][%(levelname)s] %(message)s"))
        logger.addHandler(handler)
    level = _level("LINKCHAT_LOG_LEVEL", logging.INFO)
    logger.setLevel(level)
    logging.getLogger("linkchat.llm").setLevel(_level("LINKCHAT_LLM_LOG_LEVEL", level))


_configure_logging()
