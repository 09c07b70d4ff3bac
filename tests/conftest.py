import sys
import json
import time
import hmac
import hashlib
import importlib
from pathlib import Path
from types import SimpleNamespace
from urllib.parse import urlparse
import jwt
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

# modules whose import-time state depends on Config, in dependency order
RELOAD_ORDER = [
    "core.config",
    "core.db",
    "core.whop_client",
    "core.whop_oauth",
    "core.auth",
    "core.storage",
    "core.config_audit",
    "core.rate_limit",
    "services.linking",
    "services.checkout",
    "services.catalog",
    "services.webhooks",
    "server",
]

WEBHOOK_SECRETS = ("whsec_old", "whsec_current")

@pytest.fixture(scope="session")
def whop_signing_key():
    private_key = ec.generate_private_key(ec.SECP256R1())
    private_pem = private_key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    public_pem = private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode()
    return SimpleNamespace(private_pem=private_pem, public_pem=public_pem)

@pytest.fixture(scope="function")
def app_module(tmp_path_factory, monkeypatch, whop_signing_key):
    db_path = tmp_path_factory.mktemp("db") / "test.db"
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{db_path}")
    monkeypatch.setenv("APP_BASE_URL", "http://localhost:3000")
    monkeypatch.setenv("WHOP_API_KEY", "app_key_test")
    monkeypatch.setenv("WHOP_APP_ID", "app_test")
    monkeypatch.setenv("WHOP_CLIENT_ID", "client_test")
    monkeypatch.setenv("WHOP_CLIENT_SECRET", "client_secret_test")
    monkeypatch.setenv("NEXT_PUBLIC_WHOP_REDIRECT_URL", "http://localhost:4242/api/auth/callback")
    monkeypatch.setenv("WHOP_WEBHOOK_SECRET", ",".join(WEBHOOK_SECRETS))
    monkeypatch.setenv("WHOP_TOKEN_PUBLIC_KEY", whop_signing_key.public_pem)
    monkeypatch.setenv("WHOP_API_BASE", "https://api.whop.com")
    monkeypatch.setenv("SESSION_SECRET", "testsecret")
    monkeypatch.setenv("RATE_LIMIT_ENABLED", "0")
    monkeypatch.setenv("WEBHOOK_WORKER_ENABLED", "0")
    monkeypatch.setenv("R2_ACCOUNT_ID", "acc123")
    monkeypatch.setenv("R2_ACCESS_KEY_ID", "r2_key")
    monkeypatch.setenv("R2_SECRET_ACCESS_KEY", "r2_secret")
    monkeypatch.setenv("R2_BUCKET", "linkvault-test")
    monkeypatch.setenv("R2_PUBLIC_BASE", "https://files.example.com")
    for name in ("R2_ENDPOINT", "FILE_ENDPOINT", "WHOP_WEBHOOK_TOLERANCE_SECONDS"):
        monkeypatch.delenv(name, raising=False)
    module = None
    for name in RELOAD_ORDER:
        module = importlib.reload(importlib.import_module(name))
    return module

@pytest.fixture()
def app(app_module):
    return app_module.app

@pytest.fixture()
def client(app):
    return app.test_client()

@pytest.fixture()
def db(app_module):
    session = importlib.import_module("core.db").SessionLocal()
    try:
        yield session
    finally:
        session.close()

class FakeResponse:
    def __init__(self, status_code, payload):
        self.status_code = status_code
        self._payload = payload
        self.text = payload if isinstance(payload, str) else json.dumps(payload)

    def json(self):
        if isinstance(self._payload, str):
            raise ValueError("not json")
        return self._payload

class FakeWhop:
    """Stands in for ``requests.request`` against the Whop API.

    Responses are registered per (method, path). A queue of several
    responses is consumed in order; the last one then repeats.
    """

    def __init__(self):
        self.calls = []
        self.routes = {}

    def on(self, method, path, payload=None, status=200):
        self.routes.setdefault((method, path), []).append((status, payload))
        return self

    def __call__(self, method, url, json=None, headers=None, timeout=None):
        path = urlparse(url).path
        self.calls.append(SimpleNamespace(method=method, path=path, body=json, headers=headers or {}, timeout=timeout))
        queue = self.routes.get((method, path))
        if not queue:
            return FakeResponse(404, {"error": {"message": f"no fake for {method} {path}"}})
        status, payload = queue.pop(0) if len(queue) > 1 else queue[0]
        if callable(payload):
            payload = payload(json)
        return FakeResponse(status, payload)

    def calls_to(self, method, path):
        return [c for c in self.calls if c.method == method and c.path == path]

@pytest.fixture()
def whop(app_module, monkeypatch):
    fake = FakeWhop()
    client_module = importlib.import_module("core.whop_client")
    monkeypatch.setattr(client_module.requests, "request", fake)
    return fake

class FakeS3:
    def __init__(self):
        self.presigned = []
        self.listed = []

    def generate_presigned_url(self, ClientMethod, Params, ExpiresIn):
        self.presigned.append(SimpleNamespace(method=ClientMethod, params=Params, expires_in=ExpiresIn))
        return f"https://r2.test/{Params['Bucket']}/{Params['Key']}?op={ClientMethod}&ttl={ExpiresIn}"

    def list_objects_v2(self, **kwargs):
        self.listed.append(kwargs)
        return {"KeyCount": 0}

@pytest.fixture()
def s3(app_module, monkeypatch):
    fake = FakeS3()
    storage = importlib.import_module("core.storage")
    monkeypatch.setattr(storage, "get_client", lambda: fake)
    return fake

@pytest.fixture()
def iframe_headers(whop_signing_key):
    def make(whop_user_id, company_id=None, **claims):
        payload = {
            "sub": whop_user_id,
            "iss": "urn:whopcom:exp-proxy",
            "aud": "app_test",
            "exp": int(time.time()) + 600,
        }
        if company_id:
            payload["companyId"] = company_id
        payload.update(claims)
        token = jwt.encode(payload, whop_signing_key.private_pem, algorithm="ES256")
        return {"x-whop-user-token": token}
    return make

@pytest.fixture()
def login(app_module, client):
    """Put a session cookie for ``user_id`` into the test client's cookie jar; ``None`` clears it."""
    def make(user_id, token=None):
        if user_id is None and token is None:
            client.delete_cookie("whop_user_id")
            return
        auth = importlib.import_module("core.auth")
        client.set_cookie("whop_user_id", token or auth.generate_session_token(user_id))
    return make

@pytest.fixture()
def sign_webhook():
    def make(body, secret=WEBHOOK_SECRETS[1], timestamp=None):
        if isinstance(body, dict):
            body = json.dumps(body)
        ts = str(int(timestamp if timestamp is not None else time.time()))
        sig = hmac.new(secret.encode(), f"{ts}.{body}".encode(), hashlib.sha256).hexdigest()
        return body, {"whop-signature": f"t={ts},v1={sig}", "Content-Type": "application/json"}
    return make

@pytest.fixture()
def seed(app_module, db):
    """Insert rows directly: ``seed.company(...)``, ``seed.user(...)``, ``seed.product(...)``, ``seed.purchase(...)``."""
    models = importlib.import_module("core.db")

    def _add(obj):
        db.add(obj)
        db.commit()
        return obj

    def company(whop_company_id="biz_1", name="Acme", **kw):
        kw.setdefault("whop_product_id", "prod_container_1")
        return _add(models.Company(whop_company_id=whop_company_id, name=name, **kw))

    def user(whop_user_id="user_1", company=None, role="seller", **kw):
        return _add(models.User(whop_user_id=whop_user_id, role=role, company=company, **kw))

    def product(owner, title="Ebook", price_cents=1500, **kw):
        kw.setdefault("file_key", "uploads/ebook.pdf")
        return _add(models.Product(
            title=title,
            price_cents=price_cents,
            currency=kw.pop("currency", "USD"),
            user_id=owner.id,
            company_id=owner.company_id,
            **kw
        ))

    def purchase(product, buyer, payment_id="pay_1", amount_cents=1500, status="paid", **kw):
        return _add(models.Purchase(
            product_id=product.id,
            buyer_id=buyer.id,
            whop_payment_id=payment_id,
            amount_cents=amount_cents,
            status=status,
            **kw
        ))

    return SimpleNamespace(company=company, user=user, product=product, purchase=purchase, models=models)
