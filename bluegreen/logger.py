import logging
import os

# the prober and the webhook sink poll constantly; keep their connection chatter out
NOISY_LOGGERS = ("urllib3", "requests")


def get_logger(
    name: str = "bluegreen",
    level: str = "INFO",
    log_dir: str | None = None,
    also: tuple = ("service",),
):
    """
    Configure console + optional file logging for the orchestrator.

    Library modules log through ``logging.getLogger(__name__)``; entry points
    call this once so ``bluegreen.*`` and the loggers named in ``also`` (the
    operator API) share the same handlers. ``BLUEGREEN_LOG_LEVEL`` overrides
    ``level``. Plans run on worker threads, so the thread name is logged.
    """
    logger = logging.getLogger(name)

    if logger.handlers:
        return logger

    level = os.getenv("BLUEGREEN_LOG_LEVEL") or level
    log_level = getattr(logging, level.upper(), logging.INFO)

    formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    handlers = [logging.StreamHandler()]
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        handlers.append(
            logging.FileHandler(os.path.join(log_dir, "orchestrator.log"), mode="a", encoding="utf-8")
        )
    for handler in handlers:
        handler.setFormatter(formatter)

    for target in (name, *also):
        configured = logging.getLogger(target)
        configured.setLevel(log_level)
        for handler in handlers:
            configured.addHandler(handler)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(log_level, logging.WARNING))

    return logger
