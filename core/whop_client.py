import requests
import structlog
from core.config import Config
from core.errors import ConfigurationError, UpstreamApiError
from core.schemas import (
    parse_upstream,
    WhopMe,
    WhopCompanyList,
    WhopProductContainer,
    WhopPlan,
    WhopCheckoutConfiguration,
)

PRODUCT_CONTAINER_NAME = "LinkVault Digital Products"
PLAN_TYPE = "one_time"
RELEASE_METHOD = "buy_now"

def to_major_units(price_cents):
    """Integer cents to the decimal amount the Whop API expects."""
    return round(int(price_cents) / 100, 2)

def normalize_currency(code):
    return (code or "USD").strip().upper()

def api_currency(code):
    return normalize_currency(code).lower()

def app_api_key():
    if not Config.WHOP_API_KEY:
        raise ConfigurationError("WHOP_API_KEY", hint="Create an API key for the app in the Whop developer dashboard.")
    return Config.WHOP_API_KEY

def _decode(resp):
    try:
        return resp.json()
    except ValueError:
        return resp.text or None

def _upstream_message(payload, path, status):
    if isinstance(payload, dict):
        err = payload.get("error")
        if isinstance(err, dict):
            err = err.get("message")
        if isinstance(err, str) and err:
            return err
        if isinstance(payload.get("message"), str):
            return payload["message"]
    elif isinstance(payload, str) and payload:
        return payload
    return f"Whop API request to {path} failed with status {status}"

def request_whop(method, path, token, body=None, error_cls=UpstreamApiError, auth=True):
    logger = structlog.get_logger()
    headers = {"Content-Type": "application/json", "Accept": "application/json"}
    if auth:
        headers["Authorization"] = f"Bearer {token}"
    if Config.WHOP_APP_ID:
        headers["X-Whop-App-Id"] = Config.WHOP_APP_ID
    url = f"{Config.WHOP_API_BASE}{path}"
    try:
        resp = requests.request(method, url, json=body, headers=headers, timeout=Config.WHOP_HTTP_TIMEOUT_SECONDS)
    except requests.RequestException as e:
        logger.warning("whop_request_failed", method=method, path=path, error=str(e))
        raise error_cls(f"Whop API request to {path} failed: {e}", None)
    payload = _decode(resp)
    if not (200 <= resp.status_code < 300):
        logger.warning("whop_request_rejected", method=method, path=path, status_code=resp.status_code)
        raise error_cls(_upstream_message(payload, path, resp.status_code), resp.status_code, payload)
    logger.info("whop_request_ok", method=method, path=path, status_code=resp.status_code)
    return payload

def fetch_me(token):
    return parse_upstream(WhopMe, request_whop("GET", "/api/v2/me", token), "fetch_me")

def fetch_companies(token):
    payload = request_whop("GET", "/api/v5/me/companies", token)
    return parse_upstream(WhopCompanyList, payload, "fetch_companies").data

def create_product_container(token, company_id=None):
    body = {"name": PRODUCT_CONTAINER_NAME, "visibility": "hidden"}
    if company_id:
        body["company_id"] = company_id
    payload = request_whop("POST", "/api/v5/products", token, body)
    return parse_upstream(WhopProductContainer, payload, "create_product_container").id

def create_plan(token, product_container_id, price_cents, currency, metadata=None):
    body = {
        "product_id": product_container_id,
        "plan_type": PLAN_TYPE,
        "release_method": RELEASE_METHOD,
        "initial_price": to_major_units(price_cents),
        "base_currency": api_currency(currency),
        "visibility": "hidden",
        "metadata": metadata or {},
    }
    payload = request_whop("POST", "/api/v5/plans", token, body)
    return parse_upstream(WhopPlan, payload, "create_plan").id

def inline_plan(company_id, price_cents, currency):
    return {
        "company_id": company_id,
        "initial_price": to_major_units(price_cents),
        "plan_type": PLAN_TYPE,
        "release_method": RELEASE_METHOD,
        "currency": api_currency(currency),
    }

def create_checkout_configuration(token, success_url, cancel_url, plan_id=None, plan=None, metadata=None):
    if bool(plan_id) == bool(plan):
        raise ValueError("exactly one of plan_id or plan is required")
    body = {
        "success_url": success_url,
        "cancel_url": cancel_url,
        "metadata": metadata or {},
    }
    if plan_id:
        body["plan_id"] = plan_id
    else:
        body["plan"] = plan
    payload = request_whop("POST", "/api/v1/checkout_configurations", token, body)
    return parse_upstream(WhopCheckoutConfiguration, payload, "create_checkout_configuration")
