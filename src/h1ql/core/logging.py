import logging
import sys
from typing import Optional, TextIO

from h1ql.core.config import settings

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"


def setup_logging(level: Optional[str] = None, stream: Optional[TextIO] = None) -> None:
    """
    Configure logging for a process compiling queries.

    Hosts embedding the pipeline call this once at startup (stdout, level
    from ``LOG_LEVEL``). The CLI calls it with stderr so that log lines
    never mix with the SQL it prints.

    - h1ql.* loggers at ``level``
    - root logger at INFO, or higher when ``level`` is higher
    - sqlglot reduced to errors
    """

    app_level = getattr(logging, (level or settings.log_level).upper(), logging.INFO)

    handler = logging.StreamHandler(stream if stream is not None else sys.stdout)
    handler.setFormatter(logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S%z"))

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(max(app_level, logging.INFO))
    root.addHandler(handler)

    logging.getLogger("h1ql").setLevel(app_level)

    # sqlglot warns on every unsupported dialect feature it meets
    logging.getLogger("sqlglot").setLevel(logging.ERROR)
