#  EdgeGuard - Logging Configuration
#
#  Structured logging for the edge layer. Records emitted while a request
#  is being handled carry its request id and resolved client IP, so ban,
#  rate-limit and admin decisions can be traced back to a caller.
#
#  Depends on: (none)
#  Used by:    run.py, app.py, middleware/security.py, routes/admin_ban.py

import contextvars
import json
import logging
import sys
import time
from contextlib import contextmanager

request_id_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("request_id", default=None)
client_ip_var: contextvars.ContextVar[str | None] = contextvars.ContextVar("client_ip", default=None)

_CONTEXT_VARS = (("request_id", request_id_var), ("client_ip", client_ip_var))

# Decision details passed through `extra=` by the edge and admin loggers
_DECISION_FIELDS = ("limiter", "action", "remaining", "degraded")


def set_request_id(rid: str | None):
    request_id_var.set(rid)


@contextmanager
def client_ip_context(ip: str):
    """Attribute every record logged inside the block to `ip`."""
    token = client_ip_var.set(ip)
    try:
        yield
    finally:
        client_ip_var.reset(token)


def _context_value(record: logging.LogRecord, name: str, var: contextvars.ContextVar):
    # Values captured by RequestContextFilter win over the live context,
    # which may already be reset by the time a queued record is formatted
    value = getattr(record, name, None)
    if value and value != "-":
        return value
    return var.get(None)


class RequestContextFilter(logging.Filter):
    """Copy the current request context onto each record as it is handled."""

    def filter(self, record: logging.LogRecord) -> bool:
        for name, var in _CONTEXT_VARS:
            setattr(record, name, _context_value(record, name, var) or "-")
        return True


class JSONFormatter(logging.Formatter):
    """Single-line JSON with request context and decision fields."""

    converter = time.gmtime

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": self.formatTime(record, "%Y-%m-%dT%H:%M:%S") + f".{int(record.msecs):03d}Z",
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for name, var in _CONTEXT_VARS:
            value = _context_value(record, name, var)
            if value:
                entry[name] = value
        for name in _DECISION_FIELDS:
            if hasattr(record, name):
                entry[name] = getattr(record, name)
        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


_TEXT_FORMAT = "%(asctime)s [%(name)s] %(levelname)s %(client_ip)s: %(message)s"


def setup_logging(level: str = "INFO", fmt: str = "json"):
    """Install the edgeguard handler once.

    Text output prefixes each line with the client IP ("-" outside a
    request); JSON output carries request_id and client_ip as fields.
    """
    root = logging.getLogger("edgeguard")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.addFilter(RequestContextFilter())
        if fmt == "json":
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(logging.Formatter(_TEXT_FORMAT, datefmt="%H:%M:%S"))
        root.addHandler(handler)

    # Access logs duplicate the edge decisions already logged here
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
