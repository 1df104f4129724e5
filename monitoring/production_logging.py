"""
Production Logging
Structured JSON log output, AUDIT level for money and state events, and business event helpers
"""

import json
import logging
from dataclasses import dataclass, asdict, field
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Any

# Register custom AUDIT log level (between INFO and WARNING)
AUDIT_LEVEL = 25
logging.addLevelName(AUDIT_LEVEL, 'AUDIT')
logging.AUDIT = AUDIT_LEVEL  # type: ignore

_audit_logger = logging.getLogger('audit')


class LogLevel(Enum):
    DEBUG = "DEBUG"
    INFO = "INFO"
    AUDIT = "AUDIT"
    WARNING = "WARNING"
    ERROR = "ERROR"


@dataclass
class LogEntry:
    """Structured log entry"""
    timestamp: str
    level: LogLevel
    component: str
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    user_id: Optional[str] = None
    order_id: Optional[str] = None

    def to_dict(self) -> Dict:
        data = asdict(self)
        data['level'] = self.level.value
        return data


class JsonLogFormatter(logging.Formatter):
    """Single structured JSON log line per record"""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            'timestamp': datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            'level': record.levelname,
            'component': record.name,
            'message': record.getMessage(),
        }
        context = getattr(record, 'context', None)
        if context:
            log_data['context'] = context
        for key in ('order_id', 'user_id'):
            value = getattr(record, key, None)
            if value is not None:
                log_data[key] = value
        if record.exc_info:
            log_data['exception'] = self.formatException(record.exc_info)
        return json.dumps(log_data, default=str)


def configure_logging(level: int = logging.INFO) -> None:
    """Install the JSON formatter on the root logger"""
    handler = logging.StreamHandler()
    handler.setFormatter(JsonLogFormatter())
    logging.root.handlers = [handler]
    logging.root.setLevel(level)

    # SECURITY: keep gateway/provider credentials in request URLs out of logs
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)


def log_structured(entry: LogEntry) -> None:
    """Emit a LogEntry through the standard logging tree"""
    level = AUDIT_LEVEL if entry.level == LogLevel.AUDIT else getattr(logging, entry.level.value)
    logging.getLogger(entry.component).log(
        level,
        entry.message,
        extra={'context': entry.context, 'user_id': entry.user_id, 'order_id': entry.order_id}
    )


def audit_log(event: str, order_id: Optional[str] = None, user_id: Optional[str] = None, **context: Any) -> None:
    """Record a money or lifecycle event at AUDIT level"""
    _audit_logger.log(
        AUDIT_LEVEL,
        f"AUDIT: {event}",
        extra={'context': context, 'order_id': order_id, 'user_id': user_id}
    )


def log_business_event(component: str, event: str, details: Dict, user_id: Optional[str] = None, order_id: Optional[str] = None):
    """Log business event with structured context"""
    log_structured(LogEntry(
        timestamp=datetime.now(timezone.utc).isoformat(),
        level=LogLevel.INFO,
        component=component,
        message=f"Business event: {event}",
        context=details,
        user_id=user_id,
        order_id=order_id
    ))


def log_error_with_context(component: str, error: Exception, context: Dict, user_id: Optional[str] = None, order_id: Optional[str] = None):
    """Log error with full context"""
    error_context = {
        'error_type': type(error).__name__,
        'error_message': str(error),
        **context
    }
    log_structured(LogEntry(
        timestamp=datetime.now(timezone.utc).isoformat(),
        level=LogLevel.ERROR,
        component=component,
        message=f"Error occurred: {error}",
        context=error_context,
        user_id=user_id,
        order_id=order_id
    ))
