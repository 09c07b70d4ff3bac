from flask import g
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from core.config import Config

def _identity():
    return g.get("whop_user_id") or get_remote_address()

def init_limiter(app):
    app.config.setdefault("RATELIMIT_ENABLED", Config.RATE_LIMIT_ENABLED)
    limiter = Limiter(
        app=app,
        key_func=_identity,
        default_limits=[Config.RATE_LIMIT_DEFAULT],
        storage_uri="memory://",
    )
    return limiter
