import csv
import io
import structlog
from sqlalchemy import or_
from core import storage
from core.config import Config
from core.db import Company, Product, Purchase, User
from core.errors import AuthenticationError, NotFoundError, ValidationError

ORDERS_EXPORT_LIMIT = 2000
ORDERS_CSV_COLUMNS = ["product_title", "product_id", "amount", "buyer_id", "purchased_at"]
PRIVATE_PRODUCT_FIELDS = ("fileKey",)


def public_product(product):
    data = product.to_dict()
    for key in PRIVATE_PRODUCT_FIELDS:
        data.pop(key, None)
    return data


def list_products(db, whop_company_id=None):
    query = db.query(Product).filter(Product.is_active.is_(True))
    company = None
    if whop_company_id:
        company = db.query(Company).filter_by(whop_company_id=whop_company_id).first()
        if not company:
            raise NotFoundError("Company not found", details=f"No company with id {whop_company_id}.")
        query = query.filter(Product.company_id == company.id)
    products = [public_product(p) for p in query.order_by(Product.created_at.desc()).all()]
    if company is None:
        return products
    return {
        "company": {"id": company.id, "whopCompanyId": company.whop_company_id, "name": company.name},
        "products": products,
    }


def get_product(db, product_id):
    product = db.get(Product, product_id)
    if not product:
        raise NotFoundError("Product not found")
    return product


def owns_product(user, product):
    if product.user_id == user.id:
        return True
    return bool(user.company_id) and product.company_id == user.company_id


def delete_product(db, user, product_id):
    logger = structlog.get_logger()
    product = get_product(db, product_id)
    if not owns_product(user, product):
        raise AuthenticationError("Only the product owner can delete it", status_code=403, code="forbidden")
    purchases = db.query(Purchase).filter_by(product_id=product.id).count()
    if purchases:
        raise ValidationError(
            "Product has purchases and cannot be deleted",
            code="product_has_purchases",
            details={"purchases": purchases},
            hint="Deactivate the product instead.",
        )
    db.delete(product)
    db.commit()
    logger.info("product_deleted", product_id=product_id, user_id=user.id)


def create_upload_url(payload):
    file_key = storage.new_file_key(payload.fileName)
    return {
        "uploadUrl": storage.get_upload_url(file_key, payload.contentType),
        "fileKey": file_key,
        "publicUrl": storage.public_url(file_key),
        "expiresIn": Config.UPLOAD_URL_TTL_SECONDS,
    }


def image_url(db, file_key):
    """Sign a short-lived GET for a product cover stored in a private bucket."""
    if not file_key:
        raise ValidationError("fileKey is required", details={"missing": ["fileKey"]})
    product = db.query(Product).filter_by(image_key=file_key, is_active=True).first()
    if not product:
        raise NotFoundError("Image not found", details={"fileKey": file_key})
    return storage.get_download_url(file_key, Config.IMAGE_URL_TTL_SECONDS)


def download_url(db, user, purchase_id):
    """Sign a download link for a paid purchase and count the download."""
    logger = structlog.get_logger()
    purchase = db.get(Purchase, purchase_id)
    if not purchase:
        raise NotFoundError("Purchase not found")
    if purchase.buyer_id != user.id and not owns_product(user, purchase.product):
        raise AuthenticationError("Not allowed", status_code=403, code="forbidden")
    if purchase.status != "paid":
        raise AuthenticationError(
            "Purchase is not paid", status_code=403, code="forbidden", details={"status": purchase.status}
        )
    url = storage.get_download_url(purchase.product.file_key, Config.DOWNLOAD_URL_TTL_SECONDS)
    purchase.downloads += 1
    db.add(purchase)
    db.commit()
    logger.info("download_issued", purchase_id=purchase.id, downloads=purchase.downloads)
    return {"url": url, "expiresIn": Config.DOWNLOAD_URL_TTL_SECONDS}


def _orders_query(db, user, q=None):
    query = db.query(Purchase).join(Product, Purchase.product_id == Product.id).join(User, Purchase.buyer_id == User.id)
    if user.company_id:
        query = query.filter(or_(Product.company_id == user.company_id, Product.user_id == user.id))
    else:
        query = query.filter(Product.user_id == user.id)
    if q:
        query = query.filter(or_(Product.title.ilike(f"%{q}%"), User.whop_user_id == q))
    return query.order_by(Purchase.created_at.desc()).limit(ORDERS_EXPORT_LIMIT)


def export_orders_csv(db, user, q=None):
    out = io.StringIO()
    writer = csv.writer(out, lineterminator="\n")
    writer.writerow(ORDERS_CSV_COLUMNS)
    for purchase in _orders_query(db, user, q):
        writer.writerow([
            purchase.product.title,
            purchase.product.id,
            purchase.amount_cents / 100,
            purchase.buyer.whop_user_id,
            purchase.created_at.isoformat(),
        ])
    return out.getvalue()


def me_company(user):
    if not user.company_id or not user.company:
        raise NotFoundError(
            "No company associated",
            details="This user is not associated with a company.",
            hint="Open the app from a company dashboard or reinstall it.",
        )
    return {"companyId": user.company.whop_company_id, "companyName": user.company.name}
