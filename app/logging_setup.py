import logging
import sys
from contextvars import ContextVar
from typing import Optional

from pythonjsonlogger import jsonlogger

# per-request context carried into every log record
TRACE_ID_CTX: ContextVar[Optional[str]] = ContextVar("trace_id", default=None)
TRIP_ID_CTX: ContextVar[Optional[str]] = ContextVar("trip_id", default=None)


class RequestContextFilter(logging.Filter):
    def filter(self, record):
        record.trace_id = TRACE_ID_CTX.get(None)
        # an explicit extra={"trip_id": ...} wins over the request context
        if getattr(record, "trip_id", None) is None:
            record.trip_id = TRIP_ID_CTX.get(None)
        return True


def setup_logging(level="INFO"):
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
    root = logging.getLogger()
    handler = logging.StreamHandler(sys.stdout)
    fmt = jsonlogger.JsonFormatter("%(asctime)s %(levelname)s %(name)s %(message)s %(trace_id)s %(trip_id)s")
    handler.setFormatter(fmt)
    handler.addFilter(RequestContextFilter())
    root.setLevel(level)
    root.handlers = []
    root.addHandler(handler)
