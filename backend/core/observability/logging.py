"""JSON structured logging with mandatory fields and PII redaction."""
import hmac
import json
import logging
import re
import sys
from contextvars import ContextVar
from datetime import datetime, timezone
from hashlib import sha256

from backend.core.config import settings

# Task-local: concurrent emissions on one event loop each keep their own id
_trace_id: ContextVar[str | None] = ContextVar("trace_id", default=None)

_RESERVED_ATTRS = frozenset(
    (
        'name', 'msg', 'args', 'levelname', 'levelno', 'pathname', 'filename',
        'module', 'exc_info', 'exc_text', 'stack_info', 'lineno', 'funcName',
        'created', 'msecs', 'relativeCreated', 'thread', 'threadName',
        'processName', 'process', 'message', 'taskName',
    )
)


class JSONFormatter(logging.Formatter):
    """JSON formatter with mandatory fields and PII redaction."""

    def __init__(self):
        super().__init__()
        self.email_pattern = re.compile(r'(\b\S+@\S+\.\S+\b)')
        # ISO dates and prefixed document numbers are not PII
        self.phone_pattern = re.compile(
            r'(?<![\w+])(?!\d{4}-\d{2}-\d{2})(\+?\d[\d \-/]{6,}\d)'
        )
        self.bearer_pattern = re.compile(r'(Bearer\s+)([A-Za-z0-9\-_.=]+)', re.IGNORECASE)

    def _redact_pii(self, text: str) -> str:
        if not isinstance(text, str):
            return text
        text = self.bearer_pattern.sub(r'\1***', text)
        text = self.email_pattern.sub(self._mask_email, text)
        text = self.phone_pattern.sub(self._mask_digits, text)
        return text

    def _mask_email(self, match) -> str:
        """Mask email: keep the first char of the user part and the domain."""
        email = match.group(1)
        user, domain = email.split("@", 1)
        masked_user = user[0] + "*" * (len(user) - 1) if len(user) > 1 else "*"
        return f"{masked_user}@{domain}"

    def _mask_digits(self, match) -> str:
        """Mask phone or identification numbers: keep the first 2 chars."""
        value = match.group(1)
        return value[:2] + "*" * (len(value) - 2)

    def format(self, record):
        trace_id = _trace_id.get() or 'unknown'

        log_entry = {
            'trace_id': trace_id,
            'env': settings.FACTUS_ENVIRONMENT,
            'level': record.levelname.lower(),
            'logger': record.name,
            'msg': self._redact_pii(record.getMessage()),
            'ts_utc': datetime.now(timezone.utc).isoformat().replace('+00:00', 'Z'),
        }
        if record.exc_info:
            log_entry['exc_info'] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS:
                continue
            if isinstance(value, str):
                value = self._redact_pii(value)
            log_entry[key] = value

        return json.dumps(log_entry, default=str)


def set_trace_id(trace_id: str | None) -> None:
    """Bind a trace ID to the current task or thread context."""
    _trace_id.set(trace_id)


def get_trace_id() -> str | None:
    return _trace_id.get()


def init_logging() -> None:
    """Initialize JSON logging on the root logger."""
    root = logging.getLogger()
    root.setLevel(getattr(logging, settings.log_level.upper(), logging.INFO))

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


logger = get_logger(__name__)


def hash_secret(value: str) -> str:
    """Return an HMAC-SHA256 fingerprint of a secret using SECRET_HASH_KEY.

    Access tokens, refresh tokens and admin tokens must never reach the logs.
    The fingerprint is stable, so two log lines can still be correlated.
    """
    key = settings.SECRET_HASH_KEY.encode()
    return hmac.new(key, value.encode(), sha256).hexdigest()[:16]
