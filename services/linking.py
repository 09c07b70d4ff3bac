"""Linking Whop identities to local User/Company rows.

Two entry points exist. ``complete_oauth_install`` runs after the OAuth
redirect and installs the app into every company the user administers.
``link_iframe_user`` handles requests that only carry the platform session
token; those rows are created lazily and all Whop calls made on their behalf
use the application API key.
"""
import structlog
from sqlalchemy.exc import SQLAlchemyError
from core import whop_client
from core.config import Config
from core.db import Company, User, utcnow
from core.errors import ConfigurationError, LinkVaultError, NotFoundError, ProvisioningError, UpstreamApiError
from core.whop_oauth import exchange_code, expires_at_from, ensure_fresh_access_token


def _upsert_company(db, whop_company, tokens, expires_at, container_id):
    company = db.query(Company).filter_by(whop_company_id=whop_company.id).first()
    if not company:
        company = Company(whop_company_id=whop_company.id)
    company.name = whop_company.display_name
    company.whop_access_token = tokens.access_token
    company.whop_refresh_token = tokens.refresh_token
    company.token_expires_at = expires_at
    company.whop_product_id = container_id
    company.is_active = True
    db.add(company)
    db.commit()
    return company


def _install_company(db, whop_company, tokens, expires_at):
    existing = db.query(Company).filter_by(whop_company_id=whop_company.id).first()
    container_id = existing.whop_product_id if existing else None
    if not container_id:
        container_id = whop_client.create_product_container(tokens.access_token, whop_company.id)
    return _upsert_company(db, whop_company, tokens, expires_at, container_id)


def complete_oauth_install(db, code):
    """Exchange ``code`` and provision every company the user administers.

    Returns ``(user, installed_company_ids)``. A company that fails to
    provision is logged and skipped. The user is linked to the first company
    that succeeded, or left unlinked when none did.
    """
    logger = structlog.get_logger()
    tokens = exchange_code(code)
    expires_at = expires_at_from(tokens.expires_in)
    me = whop_client.fetch_me(tokens.access_token)
    logger.info("oauth_user_fetched", whop_user_id=me.id)

    try:
        companies = whop_client.fetch_companies(tokens.access_token)
    except LinkVaultError as e:
        logger.error("oauth_companies_fetch_failed", whop_user_id=me.id, error=e.message)
        companies = []

    installed = []
    for whop_company in companies:
        try:
            company = _install_company(db, whop_company, tokens, expires_at)
            installed.append(company)
            logger.info("oauth_company_installed", company_id=company.id, whop_company_id=whop_company.id)
        except (LinkVaultError, SQLAlchemyError) as e:
            db.rollback()
            logger.error("oauth_company_install_failed", whop_company_id=whop_company.id, error=str(e))

    user = db.query(User).filter_by(whop_user_id=me.id).first()
    if not user:
        user = User(whop_user_id=me.id)
    user.role = "seller"
    user.whop_access_token = tokens.access_token
    user.whop_refresh_token = tokens.refresh_token
    user.token_expires_at = expires_at
    if installed:
        user.company = installed[0]
        user.whop_product_id = installed[0].whop_product_id
    db.add(user)
    db.commit()

    if not user.company_id:
        logger.warning("oauth_user_without_company", user_id=user.id, whop_user_id=me.id, companies_found=len(companies))
    logger.info("oauth_install_complete", user_id=user.id, installed=len(installed), companies_found=len(companies))
    return user, [c.id for c in installed]


def _resolve_company(db, whop_company_id):
    company = db.query(Company).filter_by(whop_company_id=whop_company_id).first()
    if not company:
        company = Company(whop_company_id=whop_company_id, name=whop_company_id)
        db.add(company)
        db.flush()
    return company


def link_iframe_user(db, identity):
    logger = structlog.get_logger()
    user = db.query(User).filter_by(whop_user_id=identity.whop_user_id).first()
    if not user:
        company = _resolve_company(db, identity.company_id) if identity.company_id else None
        user = User(whop_user_id=identity.whop_user_id, role="seller", company=company)
        db.add(user)
        db.commit()
        logger.info("iframe_user_created", user_id=user.id, company_id=user.company_id)
    elif identity.company_id and not user.company_id:
        company = _resolve_company(db, identity.company_id)
        user.company = company
        db.add(user)
        db.commit()
        logger.info("iframe_user_company_linked", user_id=user.id, company_id=company.id)
    return user


def resolve_current_user(db, identity):
    if identity.via_iframe:
        return link_iframe_user(db, identity)
    user = db.get(User, identity.user_id)
    if not user:
        raise NotFoundError(
            "User not found",
            details=f"No user found with id {identity.user_id}.",
            hint="Reinstall the app from the Whop dashboard.",
            action="oauth_required",
        )
    return user


def ensure_product_container(db, user):
    """Return the product container id for the user's company (or the user)."""
    owner = user.company if user.company_id else user
    if owner.whop_product_id:
        return owner.whop_product_id
    logger = structlog.get_logger()
    company_whop_id = user.company.whop_company_id if user.company_id else None
    try:
        container_id = whop_client.create_product_container(whop_client.app_api_key(), company_whop_id)
    except UpstreamApiError as e:
        logger.error("product_container_create_failed", user_id=user.id, status=e.upstream_status, error=e.message)
        raise ProvisioningError(
            "Could not create the Whop product for this account",
            details=e.details,
            hint="Check that the app has product write permissions on this company.",
            action="check_app_permissions",
        )
    owner.whop_product_id = container_id
    user.whop_product_id = user.whop_product_id or container_id
    db.add(owner)
    db.add(user)
    db.commit()
    logger.info("product_container_created", user_id=user.id, company_id=user.company_id, whop_product_id=container_id)
    return container_id


def best_credential(db, *owners):
    """Application API key first, then a fresh stored OAuth token of the first owner holding one."""
    if Config.WHOP_API_KEY:
        return Config.WHOP_API_KEY
    for owner in owners:
        if owner is not None and (owner.whop_access_token or owner.whop_refresh_token):
            return ensure_fresh_access_token(db, owner)
    raise ConfigurationError("WHOP_API_KEY", hint="Set an app API key or reinstall through OAuth.")


def oauth_status(db, identity):
    """Report whether the caller finished the install: tokens stored and a product container created."""
    if identity is None:
        return {"status": "not_authenticated", "message": "No Whop user token or session cookie was sent."}
    if identity.via_iframe:
        user = db.query(User).filter_by(whop_user_id=identity.whop_user_id).first()
    else:
        user = db.get(User, identity.user_id)
    if not user:
        return {
            "status": "user_not_found",
            "whopUserId": identity.whop_user_id,
            "action": "oauth_required",
        }
    company = user.company if user.company_id else None
    has_access = bool(user.whop_access_token or (company and company.whop_access_token))
    has_refresh = bool(user.whop_refresh_token or (company and company.whop_refresh_token))
    container_id = (company.whop_product_id if company else None) or user.whop_product_id
    expires_at = user.token_expires_at or (company.token_expires_at if company else None)
    token_expired = expires_at <= utcnow() if expires_at else None
    issues = []
    if not (has_access and has_refresh):
        issues.append("Missing OAuth tokens; run the install flow")
    if not container_id:
        issues.append("Missing Whop product container")
    if token_expired:
        issues.append("Access token expired; it is refreshed on next use")
    return {
        "status": "ready" if has_access and has_refresh and container_id else "incomplete",
        "user": {
            "id": user.id,
            "whopUserId": user.whop_user_id,
            "companyId": company.whop_company_id if company else None,
            "hasAccessToken": has_access,
            "hasRefreshToken": has_refresh,
            "hasProduct": bool(container_id),
            "whopProductId": container_id,
            "tokenExpired": token_expired,
            "tokenExpiresAt": expires_at.isoformat() if expires_at else None,
            "createdAt": user.created_at.isoformat() if user.created_at else None,
        },
        "issues": issues,
    }
