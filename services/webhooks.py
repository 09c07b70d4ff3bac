"""Whop webhook inbox.

Verified events are stored in ``webhook_events`` by the HTTP route and
answered right away. A daemon thread drains pending rows and applies them to
purchases. Failed events are recorded on their row and left for an operator.
"""
import time
import json
import hmac
import hashlib
import threading
import structlog
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from pydantic import ValidationError as PydanticValidationError
from core.config import Config
from core.db import SessionLocal, Product, Purchase, User, WebhookEvent, utcnow
from core.schemas import PaymentEventData

PAYMENT_SUCCEEDED = "payment.succeeded"
PAYMENT_REFUNDED = "payment.refunded"

class SignatureError(Exception):
    pass

def _parse_signature_header(header):
    timestamp, signatures = None, []
    for part in (header or "").split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            signatures.append(value)
    return timestamp, signatures

def sign(body, secret, timestamp):
    if isinstance(body, str):
        body = body.encode("utf-8")
    signed = f"{timestamp}.".encode("utf-8") + body
    return hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()

def verify_signature(body, header, secrets, tolerance=None, now=None):
    """Raise SignatureError unless ``header`` signs ``body`` with one of ``secrets``."""
    timestamp, signatures = _parse_signature_header(header)
    if not timestamp or not signatures:
        raise SignatureError("malformed signature header")
    try:
        ts = int(timestamp)
    except ValueError:
        raise SignatureError("invalid timestamp")
    tolerance = Config.WHOP_WEBHOOK_TOLERANCE_SECONDS if tolerance is None else tolerance
    if tolerance and abs((now or time.time()) - ts) > tolerance:
        raise SignatureError("timestamp outside tolerance")
    for secret in secrets:
        expected = sign(body, secret, timestamp)
        if any(hmac.compare_digest(expected, s) for s in signatures):
            return True
    raise SignatureError("signature mismatch")

def event_type_of(event):
    return event.get("type") or event.get("action") or "unknown"

def event_id_of(event, body):
    if event.get("id"):
        return str(event["id"])
    data = event.get("data")
    payment_id = data.get("payment_id") if isinstance(data, dict) else None
    if payment_id:
        return f"{event_type_of(event)}:{payment_id}"
    raw = body if isinstance(body, bytes) else body.encode("utf-8")
    return "sha256:" + hashlib.sha256(raw).hexdigest()

def record_event(db, event, body):
    """Insert the event into the inbox. Returns ``(row, created)``."""
    logger = structlog.get_logger()
    ev_id = event_id_of(event, body)
    existing = db.query(WebhookEvent).filter_by(event_id=ev_id).first()
    if existing:
        logger.info("webhook_duplicate", event_id=ev_id, status=existing.status)
        return existing, False
    row = WebhookEvent(
        event_id=ev_id,
        event_type=event_type_of(event),
        payload=body.decode("utf-8") if isinstance(body, bytes) else body,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        logger.info("webhook_duplicate_race", event_id=ev_id)
        return db.query(WebhookEvent).filter_by(event_id=ev_id).first(), False
    logger.info("webhook_recorded", event_id=ev_id, event_type=row.event_type)
    return row, True

def _handle_payment_succeeded(db, data):
    product_id = data.product_id
    if not product_id:
        return "ignored", "metadata.productId missing"
    payment_id = data.resolved_payment_id
    buyer_whop_id = data.buyer_whop_id
    if not payment_id or not buyer_whop_id:
        return "failed", "payment_id or buyer.id missing"
    if data.amount is None:
        return "failed", f"amount missing for payment {payment_id}"
    if db.get(Product, product_id) is None:
        return "failed", f"unknown product {product_id}"
    if db.query(Purchase).filter_by(whop_payment_id=payment_id).first():
        return "processed", None
    buyer = db.query(User).filter_by(whop_user_id=buyer_whop_id).first()
    if not buyer:
        buyer = User(whop_user_id=buyer_whop_id, role="buyer")
        db.add(buyer)
        db.flush()
    db.add(Purchase(
        product_id=product_id,
        buyer_id=buyer.id,
        whop_payment_id=payment_id,
        amount_cents=data.amount,
        status="paid",
    ))
    return "processed", None

def _handle_payment_refunded(db, data):
    payment_id = data.resolved_payment_id
    purchase = db.query(Purchase).filter_by(whop_payment_id=payment_id).first() if payment_id else None
    if not purchase:
        return "failed", f"no purchase for payment {payment_id}"
    purchase.status = "refunded"
    db.add(purchase)
    return "processed", None

HANDLERS = {
    PAYMENT_SUCCEEDED: _handle_payment_succeeded,
    PAYMENT_REFUNDED: _handle_payment_refunded,
}

def apply_event(db, row):
    event = json.loads(row.payload)
    handler = HANDLERS.get(row.event_type)
    if handler is None:
        return "ignored", f"unhandled event type {row.event_type}"
    try:
        data = PaymentEventData.model_validate(event.get("data") or {})
    except PydanticValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors(include_url=False)})
        return "failed", "invalid event data: " + (", ".join(f for f in fields if f) or "not an object")
    return handler(db, data)

def _claim(db, row_id):
    result = db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.id == row_id, WebhookEvent.status == "pending")
        .values(status="processing", attempts=WebhookEvent.attempts + 1)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    return result.rowcount == 1

def process_pending_events(session_factory=None, limit=None):
    """Drain up to ``limit`` pending inbox rows. Returns counts per final status."""
    logger = structlog.get_logger()
    factory = session_factory or SessionLocal
    limit = limit or Config.WEBHOOK_WORKER_BATCH_SIZE
    counts = {"processed": 0, "ignored": 0, "failed": 0}
    db = factory()
    try:
        pending = (
            db.query(WebhookEvent.id)
            .filter_by(status="pending")
            .order_by(WebhookEvent.id)
            .limit(limit)
            .all()
        )
    finally:
        db.close()
    for (row_id,) in pending:
        db = factory()
        try:
            if not _claim(db, row_id):
                continue
            row = db.get(WebhookEvent, row_id)
            try:
                status, reason = apply_event(db, row)
            except Exception as e:
                logger.exception("webhook_event_crashed", event_id=row.event_id)
                db.rollback()
                row = db.get(WebhookEvent, row_id)
                status, reason = "failed", str(e)
            row.status = status
            row.error = reason
            row.processed_at = utcnow()
            db.add(row)
            db.commit()
            counts[status] += 1
            log = logger.error if status == "failed" else logger.info
            log("webhook_event_" + status, event_id=row.event_id, event_type=row.event_type, reason=reason)
        finally:
            db.close()
    return counts

def start_worker():
    if not Config.WEBHOOK_WORKER_ENABLED:
        return None
    t = threading.Thread(target=_loop, name="WebhookInboxWorker", daemon=True)
    t.start()
    return t

def _loop():
    logger = structlog.get_logger()
    while Config.WEBHOOK_WORKER_ENABLED:
        try:
            process_pending_events()
        except Exception as e:
            logger.warning("webhook_worker_error", error=str(e))
        finally:
            time.sleep(max(1, Config.WEBHOOK_WORKER_INTERVAL_SECONDS))
