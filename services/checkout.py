"""Plan and checkout-configuration provisioning for products."""
from datetime import timedelta
from urllib.parse import urlparse
import structlog
from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from core import whop_client
from core.config import Config
from core.db import Product, new_id, utcnow
from core.errors import (
    CheckoutUnavailableError,
    ConflictError,
    LinkVaultError,
    NotFoundError,
    ProvisioningError,
    UpstreamApiError,
    ValidationError,
)
from services.linking import best_credential, ensure_product_container


def redirect_urls(product_id, referer=None):
    base = Config.APP_BASE_URL
    if referer:
        parsed = urlparse(referer)
        if parsed.scheme in ("http", "https") and parsed.netloc:
            base = f"{parsed.scheme}://{parsed.netloc}"
    page = f"{base}/product/{product_id}"
    return f"{page}?status=success", f"{page}?status=cancelled"


def _container_of(product):
    for owner in (product.company, product.user):
        if owner is not None and owner.whop_product_id:
            return owner.whop_product_id
    return None


def _acquire_provisioning(db, product_id):
    token = new_id()
    now = utcnow()
    stale_before = now - timedelta(seconds=Config.PROVISIONING_LOCK_TTL_SECONDS)
    result = db.execute(
        update(Product)
        .where(
            Product.id == product_id,
            Product.purchase_url.is_(None),
            or_(Product.provisioning_token.is_(None), Product.provisioning_started_at < stale_before),
        )
        .values(provisioning_token=token, provisioning_started_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return token if result.rowcount == 1 else None


def _release_provisioning(db, product):
    logger = structlog.get_logger()
    try:
        db.rollback()
        db.refresh(product)
        if product.provisioning_token:
            product.provisioning_token = None
            product.provisioning_started_at = None
            db.add(product)
            db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("checkout_lock_release_failed", product_id=product.id, error=str(e))


def _persist_checkout(db, product, configuration, plan_id):
    product.plan_id = plan_id or product.plan_id
    product.checkout_configuration_id = configuration.id
    product.purchase_url = configuration.purchase_url
    product.provisioning_token = None
    product.provisioning_started_at = None
    db.add(product)
    db.commit()
    structlog.get_logger().info(
        "checkout_provisioned",
        product_id=product.id,
        plan_id=product.plan_id,
        checkout_configuration_id=product.checkout_configuration_id,
    )
    return product.purchase_url


def _provision(db, product, referer):
    logger = structlog.get_logger()
    credential = best_credential(db, product.company, product.user)
    success_url, cancel_url = redirect_urls(product.id, referer)
    metadata = {"productId": product.id}
    errors = []

    if not product.plan_id:
        container_id = _container_of(product)
        if container_id:
            try:
                product.plan_id = whop_client.create_plan(
                    credential, container_id, product.price_cents, product.currency, metadata
                )
                db.add(product)
                db.commit()
            except LinkVaultError as e:
                logger.warning("checkout_plan_create_failed", product_id=product.id, error=e.message)
                errors.append({"step": "plan", "error": e.message})
        else:
            logger.info("checkout_plan_skipped_no_container", product_id=product.id)

    if product.plan_id:
        try:
            configuration = whop_client.create_checkout_configuration(
                credential, success_url, cancel_url, plan_id=product.plan_id, metadata=metadata
            )
            return _persist_checkout(db, product, configuration, product.plan_id)
        except LinkVaultError as e:
            logger.warning("checkout_configuration_from_plan_failed", product_id=product.id, error=e.message)
            errors.append({"step": "checkout_configuration", "error": e.message})

    company_whop_id = product.company.whop_company_id if product.company else None
    if company_whop_id:
        try:
            configuration = whop_client.create_checkout_configuration(
                credential,
                success_url,
                cancel_url,
                plan=whop_client.inline_plan(company_whop_id, product.price_cents, product.currency),
                metadata=metadata,
            )
            plan_id = configuration.plan.id if configuration.plan else None
            return _persist_checkout(db, product, configuration, plan_id)
        except LinkVaultError as e:
            logger.warning("checkout_inline_plan_failed", product_id=product.id, error=e.message)
            errors.append({"step": "inline_plan", "error": e.message})
    else:
        errors.append({"step": "inline_plan", "error": "product has no company"})

    raise CheckoutUnavailableError("Unable to create checkout for this product", details=errors)


def ensure_purchase_url(db, product_id, referer=None):
    """Return the purchase URL for a product, provisioning it on first use.

    A cached URL is returned without any Whop call. Only one request at a
    time may provision a given product; a concurrent caller either sees the
    URL the winner stored or gets a ConflictError.
    """
    product = db.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found")
    if not product.is_active:
        raise ValidationError("Product is not available", code="product_unavailable")
    if product.purchase_url:
        return product.purchase_url

    token = _acquire_provisioning(db, product.id)
    db.refresh(product)
    if token is None:
        if product.purchase_url:
            return product.purchase_url
        raise ConflictError(
            "Checkout for this product is already being set up",
            hint="Retry in a few seconds.",
            action="retry",
        )
    try:
        return _provision(db, product, referer)
    finally:
        if product.provisioning_token == token:
            _release_provisioning(db, product)


def _discard_product(db, product_id):
    logger = structlog.get_logger()
    try:
        db.query(Product).filter_by(id=product_id).delete(synchronize_session=False)
        db.commit()
        logger.info("product_creation_rolled_back", product_id=product_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("product_rollback_failed", product_id=product_id, error=str(e))


def create_product_with_plan(db, user, payload, referer=None):
    """Create a Product row together with its Whop plan and checkout configuration.

    If anything fails after the row is inserted, the row is deleted again
    before the error propagates.
    """
    logger = structlog.get_logger()
    container_id = ensure_product_container(db, user)
    credential = best_credential(db, user.company, user)

    product = Product(
        title=payload.title,
        description=payload.description,
        price_cents=payload.priceCents,
        currency=whop_client.normalize_currency(payload.currency),
        file_key=payload.fileKey,
        image_key=payload.imageKey,
        image_url=payload.imageUrl,
        user_id=user.id,
        company_id=user.company_id,
    )
    db.add(product)
    db.commit()
    product_id = product.id
    logger.info("product_created", product_id=product_id, user_id=user.id, company_id=user.company_id)

    try:
        metadata = {"productId": product_id}
        if user.company_id:
            metadata["companyId"] = user.company.whop_company_id
        plan_id = whop_client.create_plan(credential, container_id, product.price_cents, product.currency, metadata)
        product.plan_id = plan_id
        db.add(product)
        db.commit()
        success_url, cancel_url = redirect_urls(product_id, referer)
        configuration = whop_client.create_checkout_configuration(
            credential, success_url, cancel_url, plan_id=plan_id, metadata={"productId": product_id}
        )
        _persist_checkout(db, product, configuration, plan_id)
        return product
    except UpstreamApiError as e:
        db.rollback()
        _discard_product(db, product_id)
        if e.upstream_status in (401, 403):
            raise ProvisioningError(
                e.message,
                status_code=e.upstream_status,
                details=e.details,
                hint="The app is missing permission to create plans for this company.",
                action="check_app_permissions",
            )
        raise
    except (LinkVaultError, SQLAlchemyError):
        db.rollback()
        _discard_product(db, product_id)
        raise
