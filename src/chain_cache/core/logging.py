from __future__ import annotations

import logging

_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def setup_logging(level: str = "INFO") -> None:
    root = logging.getLogger()
    resolved = logging.getLevelName(str(level).upper())
    if not isinstance(resolved, int):
        resolved = logging.INFO
    if not root.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        root.addHandler(handler)
    root.setLevel(resolved)
    # web3 and urllib3 log every retry at INFO/DEBUG; the adapter reports failover itself.
    logging.getLogger("web3").setLevel(max(resolved, logging.WARNING))
    logging.getLogger("urllib3").setLevel(max(resolved, logging.WARNING))
