"""Logging setup and structured event records.

Every significant engine outcome is logged through `log_event`, which tags the
record with an upper-snake event code and a context dict. The stream formatter
prints the code; `SystemLogHandler` persists coded records to `system_log`.
"""

import logging
import sys

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(event)s | %(message)s"


class _EventDefaults(logging.Filter):
    """Give plain records the attributes the formatter expects."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "event"):
            record.event = "-"
        if not hasattr(record, "context"):
            record.context = None
        return True


def setup_logging(level: str | None = None):
    """Configure the root logger once. Safe to call repeatedly."""
    from cryptobot.config import settings

    root = logging.getLogger()
    root.setLevel((level or settings.log_level).upper())

    if any(getattr(h, "_cryptobot", False) for h in root.handlers):
        return

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_EventDefaults())
    handler._cryptobot = True
    root.addHandler(handler)

    # Third-party chatter
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
    logging.getLogger("websockets").setLevel(logging.WARNING)
    logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)


def log_event(logger: logging.Logger, level: int, event: str, message: str, *, exc_info: bool = False, **context):
    """Emit a structured record: severity, component (logger name), event code, message, context."""
    logger.log(level, message, exc_info=exc_info, extra={"event": event, "context": context or None})


class SystemLogHandler(logging.Handler):
    """Persist event-coded records to the system_log table."""

    def __init__(self, level: int = logging.INFO):
        super().__init__(level)

    def emit(self, record: logging.LogRecord):
        event = getattr(record, "event", None)
        if not event or event == "-":
            return
        try:
            from sqlmodel import Session

            from cryptobot.database import engine
            from cryptobot.models.system_log import SystemLog

            with Session(engine) as session:
                session.add(SystemLog(
                    level=record.levelname,
                    component=record.name,
                    event=event,
                    message=record.getMessage(),
                    context=_jsonable(getattr(record, "context", None)),
                ))
                session.commit()
        except Exception:
            self.handleError(record)


def install_system_log_handler() -> SystemLogHandler:
    root = logging.getLogger()
    for h in root.handlers:
        if isinstance(h, SystemLogHandler):
            return h
    handler = SystemLogHandler()
    root.addHandler(handler)
    return handler


def _jsonable(context: dict | None) -> dict | None:
    if not context:
        return None
    out = {}
    for key, value in context.items():
        if value is None or isinstance(value, (bool, int, float, str)):
            out[key] = value
        elif isinstance(value, (list, tuple)):
            out[key] = [v if isinstance(v, (bool, int, float, str)) or v is None else str(v) for v in value]
        elif isinstance(value, dict):
            out[key] = _jsonable(value)
        else:
            out[key] = str(value)
    return out
