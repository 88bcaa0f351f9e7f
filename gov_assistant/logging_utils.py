import datetime
import json
import logging
from collections import deque

# --- In-Memory Log for the live activity feed ---
live_log = deque(maxlen=50)

SENSITIVE_REQUEST_HEADERS = {'authorization', 'x-api-key', 'cookie'}
SENSITIVE_RESPONSE_HEADERS = {'set-cookie', 'authorization'}
SENSITIVE_BODY_FIELDS = {'llmApiKey', 'claudeApiKey', 'apiKey'}
MAX_BODY_LOG_LENGTH = 500


def add_log_entry(msg, level="info"):
    """Add a log entry to the live activity feed"""
    timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
    live_log.append({"time": timestamp, "msg": msg, "level": level})


def _format_body(body):
    try:
        if isinstance(body, dict):
            body = {k: ('***' if k in SENSITIVE_BODY_FIELDS else v) for k, v in body.items()}
            body_str = json.dumps(body)
        else:
            body_str = str(body)
        if len(body_str) > MAX_BODY_LOG_LENGTH:
            body_str = body_str[:MAX_BODY_LOG_LENGTH] + "...[truncated]"
        return body_str
    except (TypeError, ValueError):
        return f"[unserializable body, {len(body) if body else 0} bytes]"


def log_request(method, path, headers=None, body=None, session_id=None):
    """Log incoming request details"""
    logger = logging.getLogger(__name__)

    log_msg = f"{method} {path}"
    if session_id:
        log_msg += f" [session: {session_id}]"

    if headers:
        filtered_headers = {k: v for k, v in headers.items()
                            if k.lower() not in SENSITIVE_REQUEST_HEADERS}
        if filtered_headers:
            log_msg += f" Headers: {json.dumps(filtered_headers)}"

    if body:
        log_msg += f" Body: {_format_body(body)}"

    logger.info(log_msg)
    add_log_entry(f"REQUEST: {log_msg}")


def log_response(status_code, headers=None, body=None, session_id=None, latency_ms=None):
    """Log outgoing response details"""
    logger = logging.getLogger(__name__)

    log_msg = f"Response {status_code}"
    if session_id:
        log_msg += f" [session: {session_id}]"
    if latency_ms:
        log_msg += f" ({latency_ms}ms)"

    if headers:
        filtered_headers = {k: v for k, v in headers.items()
                            if k.lower() not in SENSITIVE_RESPONSE_HEADERS}
        if filtered_headers:
            log_msg += f" Headers: {json.dumps(filtered_headers)}"

    if body:
        log_msg += f" Body: {_format_body(body)}"

    logger.info(log_msg)

    if 200 <= status_code < 400:
        level = "info"
    elif status_code < 500:
        level = "warning"
    else:
        level = "error"

    add_log_entry(f"RESPONSE: {log_msg}", level)


def log_performance(operation, duration_ms, details=None):
    """Log how long a pipeline stage or upstream call took"""
    logger = logging.getLogger(__name__)

    log_msg = f"PERF: {operation} took {duration_ms}ms"
    if details:
        log_msg += f" - {details}"

    logger.info(log_msg)

    if duration_ms < 1000:
        level = "info"
    elif duration_ms < 10000:
        level = "warning"
    else:
        level = "error"

    add_log_entry(log_msg, level)
