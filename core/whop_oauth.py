from datetime import timedelta
from urllib.parse import urlencode
import structlog
from core.config import Config
from core.db import utcnow
from core.errors import ConfigurationError, TokenExchangeError, TokenRefreshError, UpstreamApiError, UpstreamContractError
from core.logging import mask_secret
from core.schemas import parse_upstream, TokenResponse
from core.whop_client import request_whop

TOKEN_PATH = "/api/v2/oauth/token"
REFRESH_GRACE_SECONDS = 60

def _client_credentials(require_redirect=True):
    client_id, client_secret = Config.oauth_client_credentials()
    missing = []
    if not client_id:
        missing.append("WHOP_CLIENT_ID")
    if not client_secret:
        missing.append("WHOP_CLIENT_SECRET")
    if require_redirect and not Config.WHOP_REDIRECT_URL:
        missing.append("NEXT_PUBLIC_WHOP_REDIRECT_URL")
    if missing:
        raise ConfigurationError(missing, hint="Copy the OAuth settings from the Whop app dashboard.")
    return client_id, client_secret

def build_authorize_url(state=None):
    client_id, _ = _client_credentials()
    params = {
        "client_id": client_id,
        "redirect_uri": Config.WHOP_REDIRECT_URL,
        "response_type": "code",
        "scope": Config.WHOP_OAUTH_SCOPE,
    }
    if state:
        params["state"] = state
    return f"{Config.WHOP_OAUTH_AUTHORIZE_URL}?{urlencode(params)}"

def exchange_code(code):
    """Trade an authorization code for a TokenResponse."""
    client_id, client_secret = _client_credentials()
    logger = structlog.get_logger()
    logger.info("oauth_token_exchange", client_id=mask_secret(client_id), redirect_uri=Config.WHOP_REDIRECT_URL)
    body = {
        "grant_type": "authorization_code",
        "code": code,
        "client_id": client_id,
        "client_secret": client_secret,
        "redirect_uri": Config.WHOP_REDIRECT_URL,
    }
    payload = request_whop("POST", TOKEN_PATH, None, body, error_cls=TokenExchangeError, auth=False)
    return parse_upstream(TokenResponse, payload, "exchange_code")

def expires_at_from(expires_in):
    return utcnow() + timedelta(seconds=int(expires_in or 3600))

def needs_refresh(owner, now=None):
    if not owner.whop_access_token or not owner.token_expires_at:
        return True
    now = now or utcnow()
    return owner.token_expires_at <= now + timedelta(seconds=REFRESH_GRACE_SECONDS)

def ensure_fresh_access_token(db, owner):
    """Return a usable access token for a Company (or User) row.

    Tokens more than REFRESH_GRACE_SECONDS away from expiry are returned as
    stored. Otherwise the refresh grant is used once and the new token pair is
    committed onto ``owner``. A missing refresh token or a failed refresh
    raises TokenRefreshError.
    """
    if not needs_refresh(owner):
        return owner.whop_access_token
    logger = structlog.get_logger()
    if not owner.whop_refresh_token:
        logger.warning("oauth_refresh_unavailable", owner_id=owner.id)
        raise TokenRefreshError("No refresh token stored; the app must be reauthorized")
    client_id, client_secret = _client_credentials(require_redirect=False)
    body = {
        "grant_type": "refresh_token",
        "refresh_token": owner.whop_refresh_token,
        "client_id": client_id,
        "client_secret": client_secret,
    }
    try:
        payload = request_whop("POST", TOKEN_PATH, None, body, auth=False)
        tokens = parse_upstream(TokenResponse, payload, "refresh_token")
    except (UpstreamApiError, UpstreamContractError) as e:
        logger.error("oauth_refresh_failed", owner_id=owner.id, error=e.message)
        raise TokenRefreshError(f"Token refresh failed: {e.message}", details=e.details)
    owner.whop_access_token = tokens.access_token
    owner.whop_refresh_token = tokens.refresh_token or owner.whop_refresh_token
    owner.token_expires_at = expires_at_from(tokens.expires_in)
    db.add(owner)
    db.commit()
    logger.info("oauth_token_refreshed", owner_id=owner.id, expires_at=owner.token_expires_at.isoformat())
    return owner.whop_access_token
