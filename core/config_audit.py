from urllib.parse import urlparse
from core.config import Config

def _is_url(v):
    try:
        p = urlparse(v or "")
        return p.scheme in ("http", "https") and bool(p.netloc)
    except ValueError:
        return False

def _has(v):
    return bool(v)

def _rate_valid(v):
    return isinstance(v, str) and "/" in v

def _item(group, key, value, ok, message, required=True, masked=False):
    if masked:
        value = "***" if _has(value) else ""
    return {
        "group": group,
        "key": key,
        "value": value,
        "masked": masked,
        "required": required,
        "ok": ok,
        "message": "" if ok else message,
    }

def audit_storage():
    s = Config.STORAGE
    return [
        _item("Storage", "R2_ACCESS_KEY_ID", s.access_key_id, _has(s.access_key_id), "Required (or FILE_ACCESS_KEY_ID)", masked=True),
        _item("Storage", "R2_SECRET_ACCESS_KEY", s.secret_access_key, _has(s.secret_access_key), "Required (or FILE_SECRET_ACCESS_KEY)", masked=True),
        _item("Storage", "R2_BUCKET", s.bucket, _has(s.bucket), "Required (or FILE_BUCKET)"),
        _item("Storage", "R2_ENDPOINT", s.endpoint, _is_url(s.endpoint), "Set R2_ACCOUNT_ID or an explicit endpoint"),
        _item("Storage", "R2_PUBLIC_BASE", s.public_base, (not s.public_base) or _is_url(s.public_base), "Invalid URL", required=False),
    ]

def audit_config():
    items = [
        _item("General", "APP_BASE_URL", Config.APP_BASE_URL, _is_url(Config.APP_BASE_URL), "Invalid URL"),
        _item("General", "DATABASE_URL", Config.DATABASE_URL, _has(Config.DATABASE_URL), "Not resolved"),
        _item("Session", "SESSION_SECRET", Config.SESSION_SECRET,
              _has(Config.SESSION_SECRET) and Config.SESSION_SECRET != "change-me", "Set a strong secret", masked=True),
        _item("Whop", "WHOP_API_KEY", Config.WHOP_API_KEY, _has(Config.WHOP_API_KEY), "Required for plans and checkout", masked=True),
        _item("Whop", "WHOP_APP_ID", Config.WHOP_APP_ID, _has(Config.WHOP_APP_ID), "Required to verify iframe tokens", required=False),
        _item("Whop", "WHOP_CLIENT_ID", Config.WHOP_CLIENT_ID, _has(Config.WHOP_CLIENT_ID), "Required for OAuth install", required=False),
        _item("Whop", "WHOP_CLIENT_SECRET", Config.WHOP_CLIENT_SECRET, _has(Config.WHOP_CLIENT_SECRET),
              "Required for OAuth install", required=False, masked=True),
        _item("Whop", "NEXT_PUBLIC_WHOP_REDIRECT_URL", Config.WHOP_REDIRECT_URL, _is_url(Config.WHOP_REDIRECT_URL),
              "OAuth redirect URL must be absolute", required=False),
        _item("Whop", "WHOP_WEBHOOK_SECRET", Config.WHOP_WEBHOOK_SECRET, _has(Config.WHOP_WEBHOOK_SECRET),
              "Webhooks are rejected until this is set", masked=True),
        _item("Whop", "WHOP_TOKEN_PUBLIC_KEY", Config.WHOP_TOKEN_PUBLIC_KEY, _has(Config.WHOP_TOKEN_PUBLIC_KEY),
              "Required to verify iframe tokens", required=False, masked=True),
        _item("RateLimit", "RATE_LIMIT_DEFAULT", Config.RATE_LIMIT_DEFAULT, _rate_valid(Config.RATE_LIMIT_DEFAULT), "Expected N/unit"),
        _item("RateLimit", "RATE_LIMIT_AUTH", Config.RATE_LIMIT_AUTH, _rate_valid(Config.RATE_LIMIT_AUTH), "Expected N/unit"),
        _item("RateLimit", "RATE_LIMIT_CHECKOUT", Config.RATE_LIMIT_CHECKOUT, _rate_valid(Config.RATE_LIMIT_CHECKOUT), "Expected N/unit"),
        _item("RateLimit", "RATE_LIMIT_WEBHOOK", Config.RATE_LIMIT_WEBHOOK, _rate_valid(Config.RATE_LIMIT_WEBHOOK), "Expected N/unit"),
    ]
    items.extend(audit_storage())
    return {"items": items, "ok": all(i["ok"] for i in items if i["required"])}
