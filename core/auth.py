import time
from dataclasses import dataclass
from functools import wraps
from typing import Optional
from flask import request, g
import jwt
import structlog
from core.config import Config
from core.errors import AuthenticationError, ConfigurationError

WHOP_USER_TOKEN_HEADER = "x-whop-user-token"
WHOP_TOKEN_ISSUER = "urn:whopcom:exp-proxy"

@dataclass(frozen=True)
class Identity:
    """Who is calling.

    ``whop_user_id`` is set for iframe sessions (platform token), ``user_id``
    for the cookie issued by the OAuth callback.
    """
    whop_user_id: Optional[str] = None
    company_id: Optional[str] = None
    user_id: Optional[str] = None
    email: Optional[str] = None

    @property
    def via_iframe(self):
        return bool(self.whop_user_id)

def generate_session_token(user_id):
    payload = {"sub": user_id, "exp": int(time.time()) + Config.SESSION_TTL_SECONDS, "type": "session"}
    return jwt.encode(payload, Config.SESSION_SECRET, algorithm=Config.SESSION_ALG)

def decode_session_token(token):
    claims = jwt.decode(token, Config.SESSION_SECRET, algorithms=[Config.SESSION_ALG])
    if claims.get("type") != "session":
        raise jwt.InvalidTokenError("not a session token")
    return claims

def verify_whop_user_token(token):
    if not Config.WHOP_TOKEN_PUBLIC_KEY:
        raise ConfigurationError("WHOP_TOKEN_PUBLIC_KEY", hint="Paste the Whop app's token verification key.")
    options = {"verify_aud": bool(Config.WHOP_APP_ID)}
    claims = jwt.decode(
        token,
        Config.WHOP_TOKEN_PUBLIC_KEY,
        algorithms=[Config.WHOP_TOKEN_ALG],
        audience=Config.WHOP_APP_ID or None,
        issuer=WHOP_TOKEN_ISSUER,
        options=options,
    )
    user_id = claims.get("sub") or claims.get("userId")
    if not user_id:
        raise jwt.InvalidTokenError("token has no user id")
    company_id = claims.get("companyId") or claims.get("company_id")
    if not company_id:
        structlog.get_logger().warning("whop_token_missing_company", whop_user_id=user_id)
    return Identity(whop_user_id=user_id, company_id=company_id, email=claims.get("email"))

def identify_request():
    logger = structlog.get_logger()
    platform_token = request.headers.get(WHOP_USER_TOKEN_HEADER)
    if platform_token:
        try:
            return verify_whop_user_token(platform_token)
        except jwt.PyJWTError as e:
            logger.warning("whop_token_invalid", error=str(e))
            raise AuthenticationError(
                "Invalid Whop user token",
                hint="Open the app from inside Whop so a fresh token is issued.",
                action="reload_in_whop",
            )
    cookie = request.cookies.get(Config.SESSION_COOKIE_NAME)
    if cookie:
        try:
            return Identity(user_id=decode_session_token(cookie)["sub"])
        except jwt.PyJWTError as e:
            logger.info("session_cookie_invalid", error=str(e))
    return None

def auth_required(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        identity = identify_request()
        if identity is None:
            raise AuthenticationError(
                "Authentication required",
                details="No Whop user token or session cookie was sent.",
                hint="Install the app through Whop's OAuth flow.",
                action="oauth_required",
            )
        g.identity = identity
        g.whop_user_id = identity.whop_user_id or identity.user_id
        return fn(*args, **kwargs)
    return wrapper
