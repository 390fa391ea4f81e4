"""Log setup.

All modules log to `logging.getLogger("pgclone")`. Structured data goes into
a dict as the only argument, eg

    logit.error("cannot delete", {"reason": "timeout"})

and ends up in the `data` field of the JSON line.
"""

import json
import logging
import sys
from datetime import UTC, datetime


class JsonFormatter(logging.Formatter):
    """Format every record as one line of JSON."""

    def format(self, record: logging.LogRecord) -> str:
        if isinstance(record.args, dict):
            msg, data = str(record.msg), record.args
        else:
            msg, data = record.getMessage(), None

        out = dict(
            time=datetime.fromtimestamp(record.created, UTC).isoformat(),
            level=record.levelname,
            logger=record.name,
            message=msg,
        )
        if data:
            out["data"] = data
        if record.exc_info:
            out["exception"] = self.formatException(record.exc_info)
        return json.dumps(out, default=str)


def setup(level: str) -> None:
    """Send all `pgclone` logs to stderr at `level`, eg "info" or "DEBUG"."""
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter())

    logger = logging.getLogger("pgclone")
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level.upper())
    logger.propagate = False
