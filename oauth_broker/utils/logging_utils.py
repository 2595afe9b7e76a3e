"""
Structured JSON logging with secret redaction.

Anything passed through ``extra=`` ends up in the JSON line, so it is run
through :func:`redact_sensitive_data` first. Codes, verifiers and tokens are
never logged verbatim.

Example:
    logger.info("Token request", extra={"body": {"code": "auth_x", "grant_type": "authorization_code"}})
    # {"message": "Token request", "body": {"code": "***REDACTED***", "grant_type": "authorization_code"}, ...}
"""

import json
import logging
import sys
from datetime import datetime, timezone

SENSITIVE_KEYS = frozenset({
    'password', 'api_key', 'token', 'secret', 'key',
    'access_token', 'refresh_token', 'client_secret', 'code', 'code_verifier',
})

REDACTED = '***REDACTED***'

# Attributes every LogRecord has; anything else came from ``extra``
_RECORD_ATTRS = frozenset(vars(logging.makeLogRecord({}))) | {'message', 'asctime'}


def redact_sensitive_data(obj):
    """Copy of ``obj`` with values under SENSITIVE_KEYS (any case) replaced, recursing into dicts and lists."""
    if isinstance(obj, dict):
        return {
            k: REDACTED if str(k).lower() in SENSITIVE_KEYS else redact_sensitive_data(v)
            for k, v in obj.items()
        }
    if isinstance(obj, list):
        return [redact_sensitive_data(item) for item in obj]
    return obj


class JSONFormatter(logging.Formatter):
    """One JSON object per line: standard fields, the exception and redacted extras."""

    def format(self, record):
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno,
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        extras = {k: v for k, v in vars(record).items() if k not in _RECORD_ATTRS}
        payload.update(redact_sensitive_data(extras))
        return json.dumps(payload, default=str)


def setup_json_logging(level=logging.INFO, output='stdout', file_path=None):
    """
    Replace the root logger's handlers with a single JSON handler.

    Args:
        level: Root log level
        output: 'stdout', or 'file' to write to ``file_path``
        file_path: Log file used when ``output`` is 'file'

    Returns:
        The root logger
    """
    root = logging.getLogger()
    root.setLevel(level)
    for handler in list(root.handlers):
        root.removeHandler(handler)

    if output == 'file' and file_path:
        handler = logging.FileHandler(file_path)
    else:
        handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    root.addHandler(handler)
    return root
