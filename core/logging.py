import structlog
import logging
import uuid
from flask import g, request

SENSITIVE_HEADERS = ("authorization", "cookie", "whop-signature", "x-whop-signature", "x-whop-user-token")

def configure_logging(level=logging.INFO):
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="ISO"),
            structlog.processors.add_log_level,
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )

def mask_headers(headers):
    masked = {}
    for k, v in headers.items():
        if (k or "").lower() in SENSITIVE_HEADERS:
            masked[k] = "***"
        else:
            masked[k] = v
    return masked

def mask_secret(value):
    if not value:
        return "MISSING"
    if len(value) <= 10:
        return "***"
    return f"{value[:5]}...{value[-5:]}"

def bind_request_context(app):
    @app.before_request
    def assign_request_id():
        g.request_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=g.request_id, path=request.path)
    @app.after_request
    def inject_request_id(response):
        response.headers["X-Request-Id"] = g.get("request_id") or ""
        return response
