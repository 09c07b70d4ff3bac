import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _first(*names):
    for name in names:
        value = os.getenv(name)
        if value:
            return value
    return ""


@dataclass(frozen=True)
class StorageConfig:
    """Object storage settings.

    Each value is taken from its ``R2_*`` variable first and from the legacy
    ``FILE_*`` alias second. The endpoint falls back to the Cloudflare R2
    account endpoint when only an account id is given.
    """
    account_id: str
    access_key_id: str
    secret_access_key: str
    bucket: str
    public_base: str
    endpoint: str
    region: str

    @property
    def configured(self):
        return bool(self.access_key_id and self.secret_access_key and self.bucket and self.endpoint)

    def missing(self):
        keys = []
        if not self.access_key_id:
            keys.append("R2_ACCESS_KEY_ID")
        if not self.secret_access_key:
            keys.append("R2_SECRET_ACCESS_KEY")
        if not self.bucket:
            keys.append("R2_BUCKET")
        if not self.endpoint:
            keys.append("R2_ACCOUNT_ID")
        return keys


def resolve_storage_config():
    account_id = _first("R2_ACCOUNT_ID", "FILE_ACCOUNT_ID")
    endpoint = _first("R2_ENDPOINT", "FILE_ENDPOINT")
    if not endpoint and account_id:
        endpoint = f"https://{account_id}.r2.cloudflarestorage.com"
    return StorageConfig(
        account_id=account_id,
        access_key_id=_first("R2_ACCESS_KEY_ID", "FILE_ACCESS_KEY_ID"),
        secret_access_key=_first("R2_SECRET_ACCESS_KEY", "FILE_SECRET_ACCESS_KEY"),
        bucket=_first("R2_BUCKET", "FILE_BUCKET"),
        public_base=_first("R2_PUBLIC_BASE", "FILE_PUBLIC_BASE").rstrip("/"),
        endpoint=endpoint,
        region=_first("R2_REGION", "FILE_REGION") or "auto",
    )


class Config:
    API_VERSION = os.getenv("API_VERSION") or "v1.0.0"
    APP_BASE_URL = (os.getenv("APP_BASE_URL") or "http://localhost:3000").rstrip("/")
    WHOP_CLIENT_ID = os.getenv("WHOP_CLIENT_ID") or ""
    WHOP_CLIENT_SECRET = os.getenv("WHOP_CLIENT_SECRET") or ""
    WHOP_API_KEY = os.getenv("WHOP_API_KEY") or ""
    WHOP_APP_ID = os.getenv("WHOP_APP_ID") or ""
    WHOP_REDIRECT_URL = os.getenv("NEXT_PUBLIC_WHOP_REDIRECT_URL") or ""
    WHOP_WEBHOOK_SECRET = os.getenv("WHOP_WEBHOOK_SECRET") or ""
    WHOP_WEBHOOK_TOLERANCE_SECONDS = int(os.getenv("WHOP_WEBHOOK_TOLERANCE_SECONDS") or "300")
    WHOP_TOKEN_PUBLIC_KEY = (os.getenv("WHOP_TOKEN_PUBLIC_KEY") or "").replace("\\n", "\n")
    WHOP_TOKEN_ALG = "ES256"
    WHOP_API_BASE = (os.getenv("WHOP_API_BASE") or "https://api.whop.com").rstrip("/")
    WHOP_OAUTH_AUTHORIZE_URL = os.getenv("WHOP_OAUTH_AUTHORIZE_URL") or "https://whop.com/oauth"
    WHOP_OAUTH_SCOPE = os.getenv("WHOP_OAUTH_SCOPE") or "read write"
    WHOP_HTTP_TIMEOUT_SECONDS = float(os.getenv("WHOP_HTTP_TIMEOUT_SECONDS") or "20")
    SESSION_SECRET = os.getenv("SESSION_SECRET") or "change-me"
    SESSION_ALG = "HS256"
    SESSION_COOKIE_NAME = "whop_user_id"
    SESSION_TTL_SECONDS = int(os.getenv("SESSION_TTL_SECONDS") or "604800")
    COOKIE_SECURE = ((os.getenv("COOKIE_SECURE") or "0").lower() not in ("0", "false", "no"))
    RATE_LIMIT_ENABLED = ((os.getenv("RATE_LIMIT_ENABLED") or "1").lower() not in ("0", "false", "no"))
    RATE_LIMIT_DEFAULT = os.getenv("RATE_LIMIT_DEFAULT") or "100/hour"
    RATE_LIMIT_AUTH = os.getenv("RATE_LIMIT_AUTH") or "10/minute"
    RATE_LIMIT_CHECKOUT = os.getenv("RATE_LIMIT_CHECKOUT") or "30/minute"
    RATE_LIMIT_WEBHOOK = os.getenv("RATE_LIMIT_WEBHOOK") or "300/minute"
    WEBHOOK_WORKER_ENABLED = ((os.getenv("WEBHOOK_WORKER_ENABLED") or "1").lower() not in ("0", "false", "no"))
    WEBHOOK_WORKER_INTERVAL_SECONDS = float(os.getenv("WEBHOOK_WORKER_INTERVAL_SECONDS") or "2")
    WEBHOOK_WORKER_BATCH_SIZE = int(os.getenv("WEBHOOK_WORKER_BATCH_SIZE") or "50")
    PROVISIONING_LOCK_TTL_SECONDS = int(os.getenv("PROVISIONING_LOCK_TTL_SECONDS") or "120")
    DOWNLOAD_URL_TTL_SECONDS = int(os.getenv("DOWNLOAD_URL_TTL_SECONDS") or "600")
    UPLOAD_URL_TTL_SECONDS = int(os.getenv("UPLOAD_URL_TTL_SECONDS") or "600")
    IMAGE_URL_TTL_SECONDS = int(os.getenv("IMAGE_URL_TTL_SECONDS") or "3600")
    DATABASE_URL = os.getenv("DATABASE_URL") or "sqlite:///linkvault.db"
    STORAGE = resolve_storage_config()

    @staticmethod
    def oauth_client_credentials():
        """Client id/secret for the token endpoint, falling back to the app id/API key pair."""
        client_id = Config.WHOP_CLIENT_ID or Config.WHOP_APP_ID
        client_secret = Config.WHOP_CLIENT_SECRET or Config.WHOP_API_KEY
        return client_id, client_secret
