from __future__ import annotations

import logging
import sys

_NOISY_LOGGERS = ("botocore", "boto3", "s3transfer", "urllib3", "kubernetes")
_FORMAT = "level=%(levelname)s logger=%(name)s msg=%(message)s"


def configure_logging(level: str = "info") -> None:
    # No timestamps: the container runtime stamps each line.
    numeric_level = logging.getLevelName(level.upper())
    if not isinstance(numeric_level, int):
        numeric_level = logging.INFO

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_FORMAT))
    root = logging.getLogger()
    root.handlers[:] = [handler]
    root.setLevel(numeric_level)
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric_level, logging.WARNING))
