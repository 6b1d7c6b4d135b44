from __future__ import annotations

import logging
import sys

LOG_FORMAT = "%(asctime)s %(levelname)-7s [%(threadName)s] %(name)s: %(message)s"


def configure_logging(level: str = "INFO") -> None:
    """
    Install one stderr handler on the root logger.

    Safe to call more than once; earlier handlers are replaced.
    """
    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(handler)
    root.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # werkzeug logs every request at INFO
    logging.getLogger("werkzeug").setLevel(logging.WARNING)
