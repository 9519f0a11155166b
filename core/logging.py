"""
Logging for flowbot.

Every line names the module it came from and, when known, the chat, the
control-API request and the broadcast job it belongs to:

    [2024-05-01 12:00:00] [INFO] [engine] [chat:123456] Advanced 'A' -> 'B'

The chat/request/job ids live in contextvars. A timer task is created while
the inbound handler's chat id is set, so lines from its callback carry the
same chat id without passing it around.

Usage:
    from core.logging import get_logger, configure_logging, set_request_context

    configure_logging()              # once, in server.py
    logger = get_logger(__name__)

    set_request_context(chat_id=123456)
    logger.info("Inbound message")
"""
import logging
import os
import sys
import uuid
from contextvars import ContextVar
from typing import Any, Optional

_chat_id_var: ContextVar[Optional[str]] = ContextVar('chat_id', default=None)
_request_id_var: ContextVar[Optional[str]] = ContextVar('request_id', default=None)
_job_id_var: ContextVar[Optional[str]] = ContextVar('job_id', default=None)

_QUIET_LOGGERS = ('urllib3', 'asyncio', 'telethon')

_configured = False


def get_context() -> dict:
    return {
        'chat_id': _chat_id_var.get(),
        'request_id': _request_id_var.get(),
        'job_id': _job_id_var.get(),
    }


def set_request_context(
    chat_id: Optional[Any] = None,
    request_id: Optional[str] = None,
    job_id: Optional[Any] = None
) -> None:
    """
    Tag subsequent log lines in this context.

    Only the ids passed are changed. A short request id is generated the
    first time a context is tagged without one.
    """
    if chat_id is not None:
        _chat_id_var.set(str(chat_id))
    if request_id is not None:
        _request_id_var.set(request_id)
    elif _request_id_var.get() is None:
        _request_id_var.set(uuid.uuid4().hex[:8])
    if job_id is not None:
        _job_id_var.set(str(job_id))


def clear_request_context() -> None:
    for var in (_chat_id_var, _request_id_var, _job_id_var):
        var.set(None)


def get_chat_id() -> Optional[str]:
    return _chat_id_var.get()


def get_request_id() -> Optional[str]:
    return _request_id_var.get()


class ContextFilter(logging.Filter):
    """Copies the current chat/request/job ids onto each record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.chat_id = _chat_id_var.get() or '-'
        record.request_id = _request_id_var.get() or '-'
        record.job_id = _job_id_var.get() or '-'
        return True


class StructuredFormatter(logging.Formatter):
    """[timestamp] [LEVEL] [module] [chat:X] [req:Y] [job:Z] message, empty tags omitted."""

    _TAGS = (('chat_id', 'chat'), ('request_id', 'req'), ('job_id', 'job'))

    def __init__(self, include_timestamp: bool = True):
        super().__init__()
        self.include_timestamp = include_timestamp

    def format(self, record: logging.LogRecord) -> str:
        parts = []
        if self.include_timestamp:
            parts.append(f"[{self.formatTime(record, '%Y-%m-%d %H:%M:%S')}]")

        parts.append(f"[{record.levelname}]")
        parts.append(f"[{record.name.rsplit('.', 1)[-1] if record.name else 'root'}]")

        for attr, tag in self._TAGS:
            value = getattr(record, attr, '-')
            if value and value != '-':
                parts.append(f"[{tag}:{value}]")

        parts.append(record.getMessage())
        line = ' '.join(parts)

        if record.exc_info and not record.exc_text:
            record.exc_text = self.formatException(record.exc_info)
        if record.exc_text:
            line = f"{line}\n{record.exc_text}"
        return line


def configure_logging(
    level: Optional[str] = None,
    include_timestamp: bool = True
) -> None:
    """
    Install the structured stdout handler on the root logger.

    level falls back to LOG_LEVEL, then INFO. Repeat calls do nothing.
    """
    global _configured
    if _configured:
        return

    level_name = (level or os.environ.get('LOG_LEVEL', 'INFO')).upper()
    log_level = getattr(logging, level_name, logging.INFO)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(log_level)
    handler.setFormatter(StructuredFormatter(include_timestamp=include_timestamp))
    handler.addFilter(ContextFilter())

    root = logging.getLogger()
    root.setLevel(log_level)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    _configured = True
    logging.getLogger(__name__).debug(f"Logging configured: level={level_name}")


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name or 'flowbot')
