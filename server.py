#! /usr/bin/env python3

import os
import json
import time
from datetime import date
from functools import wraps
from urllib.parse import urlencode
from flask import Flask, Response, jsonify, request, redirect, make_response, g
from flask_cors import CORS
import structlog
from sqlalchemy.exc import SQLAlchemyError
from core.config import Config
from core.logging import configure_logging, bind_request_context, mask_headers
from core.rate_limit import init_limiter
from core.auth import WHOP_USER_TOKEN_HEADER, auth_required, generate_session_token, identify_request
from core.config_audit import audit_config, audit_storage
from core.errors import ConfigurationError, LinkVaultError
from core.http import ok, error, error_from_exception
from core.schemas import parse_and_validate, CreateProductSchema, UploadUrlSchema
from core.db import init_db, SessionLocal
from core.storage import check_bucket
from core.whop_oauth import build_authorize_url
from services.catalog import (
    create_upload_url,
    delete_product,
    download_url,
    export_orders_csv,
    get_product,
    image_url,
    list_products,
    me_company,
    public_product,
)
from services.checkout import create_product_with_plan, ensure_purchase_url
from services.linking import complete_oauth_install, oauth_status, resolve_current_user
from services.webhooks import SignatureError, process_pending_events, record_event, start_worker, verify_signature

app = Flask(__name__)
CORS(app, supports_credentials=True)
configure_logging()
bind_request_context(app)
limiter = init_limiter(app)
init_db()
app.start_time = time.time()

def _collect_post_payload():
    payload = {}
    j = request.get_json(silent=True)
    if j and isinstance(j, dict):
        payload["json"] = j
    if request.form:
        payload["form"] = request.form.to_dict()
    raw = request.get_data(cache=True, as_text=True)
    if raw and "json" not in payload:
        payload["raw"] = raw[:2000]
    return payload

@app.before_request
def _log_incoming_post():
    if request.method in ("POST", "DELETE"):
        logger = structlog.get_logger()
        logger.info(
            "incoming_request",
            method=request.method,
            remote_addr=request.remote_addr,
            headers=mask_headers(request.headers),
            body=_collect_post_payload(),
        )

@app.errorhandler(LinkVaultError)
def handle_linkvault_error(exc):
    logger = structlog.get_logger()
    log = logger.error if exc.status_code >= 500 else logger.warning
    log("request_failed", error=exc.code, status=exc.status_code, message=exc.message)
    return error_from_exception(exc)

@app.errorhandler(SQLAlchemyError)
def handle_database_error(exc):
    structlog.get_logger().error("database_error", error=str(exc))
    return error('database_error', 500, message='Database operation failed')

def local_only(fn):
    @wraps(fn)
    def wrapper(*args, **kwargs):
        ip = request.remote_addr or ''
        if ip not in ('127.0.0.1', '::1'):
            return error('forbidden', 403)
        return fn(*args, **kwargs)
    return wrapper

# Helper method to parse request body (JSON or form data)
def parse_request_body():
    data = {}
    json_data = request.get_json(silent=True)
    if json_data and isinstance(json_data, dict):
        data.update(json_data)
    if request.form:
        data.update(request.form.to_dict())
    return data

def _app_url(path, **params):
    url = f"{Config.APP_BASE_URL}{path}"
    if params:
        url += "?" + urlencode(params)
    return url

@app.route('/health', methods=['GET'])
@limiter.exempt
def health():
    return jsonify({'status': 'online', 'version': Config.API_VERSION})

@app.route('/status', methods=['GET'])
@limiter.exempt
def status():
    uptime = int(time.time() - app.start_time)
    return jsonify({
        'system': 'active',
        'status': 'online',
        'version': Config.API_VERSION,
        'appBaseUrl': Config.APP_BASE_URL,
        'uptime_seconds': uptime,
        'webhook_worker': Config.WEBHOOK_WORKER_ENABLED,
        'rate_limits': {
            'default': Config.RATE_LIMIT_DEFAULT,
            'auth': Config.RATE_LIMIT_AUTH,
            'checkout': Config.RATE_LIMIT_CHECKOUT,
            'webhook': Config.RATE_LIMIT_WEBHOOK
        }
    })

@app.route('/config/audit', methods=['GET'])
@local_only
def config_audit_json():
    return jsonify(audit_config())

@app.route('/api/health/r2', methods=['GET'])
def health_r2():
    items = audit_storage()
    try:
        bucket = check_bucket()
    except LinkVaultError as e:
        body = e.to_dict()
        body.update({'ok': False, 'items': items})
        return jsonify(body), e.status_code
    return ok({'ok': True, 'bucket': bucket, 'items': items})

@app.route('/api/auth/initiate', methods=['GET'])
@limiter.limit(Config.RATE_LIMIT_AUTH)
def auth_initiate():
    url = build_authorize_url(request.args.get('state'))
    structlog.get_logger().info("oauth_initiate", redirect_uri=Config.WHOP_REDIRECT_URL)
    return redirect(url)

@app.route('/api/auth/callback', methods=['GET'])
@limiter.limit(Config.RATE_LIMIT_AUTH)
def auth_callback():
    logger = structlog.get_logger()
    oauth_error = request.args.get('error')
    if oauth_error:
        logger.warning("oauth_callback_error", error=oauth_error, description=request.args.get('error_description'))
        return redirect(_app_url('/', error=oauth_error))
    code = request.args.get('code')
    if not code:
        if request.headers.get(WHOP_USER_TOKEN_HEADER):
            logger.info("oauth_callback_without_code_in_iframe")
            return redirect(_app_url('/', error='oauth_required'))
        return error('missing_code', 400, message='Missing authorization code')
    db = SessionLocal()
    try:
        user, installed = complete_oauth_install(db, code)
    except ConfigurationError as e:
        logger.error("oauth_not_configured", missing=e.missing)
        return redirect(_app_url('/', error='oauth_not_configured'))
    except (LinkVaultError, SQLAlchemyError) as e:
        db.rollback()
        logger.error("oauth_callback_failed", error=str(e))
        return redirect(_app_url('/', error='internal_error'))
    finally:
        db.close()
    logger.info("oauth_callback_complete", user_id=user.id, companies=len(installed))
    resp = make_response(redirect(_app_url('/experience', success='true', userId=user.id)))
    resp.set_cookie(
        Config.SESSION_COOKIE_NAME,
        generate_session_token(user.id),
        max_age=Config.SESSION_TTL_SECONDS,
        httponly=True,
        secure=Config.COOKIE_SECURE,
        samesite='Lax',
        path='/',
    )
    return resp

@app.route('/api/auth/check-status', methods=['GET'])
@limiter.limit(Config.RATE_LIMIT_AUTH)
def auth_check_status():
    db = SessionLocal()
    try:
        return ok(oauth_status(db, identify_request()))
    finally:
        db.close()

@app.route('/api/products/create-with-plan', methods=['POST'])
@auth_required
@limiter.limit(Config.RATE_LIMIT_CHECKOUT)
def products_create_with_plan():
    payload = parse_and_validate(CreateProductSchema, parse_request_body())
    db = SessionLocal()
    try:
        user = resolve_current_user(db, g.identity)
        product = create_product_with_plan(db, user, payload, request.headers.get('Referer'))
        return ok({'product': product.to_dict()}, 201)
    finally:
        db.close()

@app.route('/api/products', methods=['GET'])
def products_list():
    db = SessionLocal()
    try:
        return ok(list_products(db, request.args.get('companyId')))
    finally:
        db.close()

@app.route('/api/products/<product_id>', methods=['GET'])
def products_get(product_id):
    db = SessionLocal()
    try:
        return ok(public_product(get_product(db, product_id)))
    finally:
        db.close()

@app.route('/api/products/<product_id>', methods=['DELETE'])
@auth_required
def products_delete(product_id):
    db = SessionLocal()
    try:
        user = resolve_current_user(db, g.identity)
        delete_product(db, user, product_id)
        return ok({'status': 'deleted', 'id': product_id})
    finally:
        db.close()

@app.route('/api/products/<product_id>/checkout', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_CHECKOUT)
def products_checkout(product_id):
    db = SessionLocal()
    try:
        url = ensure_purchase_url(db, product_id, request.headers.get('Referer'))
        return ok({'checkoutUrl': url})
    finally:
        db.close()

@app.route('/api/upload-url', methods=['POST'])
@auth_required
@limiter.limit(Config.RATE_LIMIT_DEFAULT)
def upload_url():
    payload = parse_and_validate(UploadUrlSchema, parse_request_body())
    return ok(create_upload_url(payload))

@app.route('/api/images', methods=['GET'])
def images():
    db = SessionLocal()
    try:
        url = image_url(db, request.args.get('fileKey'))
    finally:
        db.close()
    resp = redirect(url)
    resp.headers['Cache-Control'] = f'private, max-age={max(0, Config.IMAGE_URL_TTL_SECONDS - 60)}'
    return resp

@app.route('/api/downloads/<purchase_id>', methods=['GET'])
@auth_required
def downloads(purchase_id):
    db = SessionLocal()
    try:
        user = resolve_current_user(db, g.identity)
        return ok(download_url(db, user, purchase_id))
    finally:
        db.close()

@app.route('/api/orders/export', methods=['GET'])
@auth_required
def orders_export():
    db = SessionLocal()
    try:
        user = resolve_current_user(db, g.identity)
        content = export_orders_csv(db, user, request.args.get('q'))
    finally:
        db.close()
    filename = f"orders-{date.today().isoformat()}.csv"
    return Response(
        content,
        mimetype='text/csv',
        headers={'Content-Disposition': f'attachment; filename="{filename}"'},
    )

@app.route('/api/me/company', methods=['GET'])
@auth_required
def my_company():
    db = SessionLocal()
    try:
        user = resolve_current_user(db, g.identity)
        return ok(me_company(user))
    finally:
        db.close()

@app.route('/api/webhooks/whop', methods=['POST'])
@app.route('/api/webhook', methods=['POST'])
@limiter.limit(Config.RATE_LIMIT_WEBHOOK)
def webhook_received():
    logger = structlog.get_logger()
    secrets = [s.strip() for s in Config.WHOP_WEBHOOK_SECRET.split(',') if s.strip()]
    if not secrets:
        return error('webhook_secret_not_configured', 500)
    sig_header = request.headers.get('whop-signature') or request.headers.get('x-whop-signature')
    body = request.get_data(cache=True)
    try:
        verify_signature(body, sig_header, secrets)
    except SignatureError as e:
        logger.warning("webhook_invalid_signature", error=str(e))
        return error('invalid_signature', 400)
    try:
        text = body.decode('utf-8')
        event = json.loads(text)
    except ValueError:
        logger.warning("webhook_invalid_payload")
        return error('invalid_payload', 400)
    if not isinstance(event, dict):
        return error('invalid_payload', 400)
    db = SessionLocal()
    try:
        row, created = record_event(db, event, text)
        return ok({'status': 'received' if created else 'duplicate', 'eventId': row.event_id})
    finally:
        db.close()

@app.route('/internal/webhooks/process', methods=['POST'])
@local_only
def internal_process_webhooks():
    return ok({'status': 'drained', 'counts': process_pending_events()})

if __name__ == '__main__':
    start_worker()
    app.run(port=int(os.getenv('PORT') or 4242), host="::1", debug=False)
