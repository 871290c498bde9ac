from __future__ import annotations

import logging

LOG_FORMAT = "%(asctime)s %(levelname)-8s [%(name)s] %(message)s"

# Loggers that stay quieter than the service itself; watchdog reports each
# inotify event at DEBUG.
QUIET_LOGGERS = {"watchdog": logging.WARNING}


def configure_logging(debug: bool = False, *, quiet_loggers: dict[str, int] | None = None) -> int:
    """Set up logging for the TURN credential service and return the level used."""
    level = logging.DEBUG if debug else logging.INFO

    root = logging.getLogger()
    # When started through uvicorn the root logger already has handlers.
    if root.handlers:
        root.setLevel(level)
    else:
        logging.basicConfig(level=level, format=LOG_FORMAT)

    logging.getLogger("backend.app").setLevel(level)
    for name, quiet_level in (QUIET_LOGGERS if quiet_loggers is None else quiet_loggers).items():
        logging.getLogger(name).setLevel(max(level, quiet_level))
    return level
