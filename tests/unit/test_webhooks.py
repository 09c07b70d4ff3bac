import importlib
import json
import time
import pytest

def succeeded_event(product_id, payment_id="pay_1", buyer="buyer_1", amount=1500, event_id="evt_1"):
    return {
        "id": event_id,
        "type": "payment.succeeded",
        "data": {
            "payment_id": payment_id,
            "amount": amount,
            "currency": "usd",
            "buyer": {"id": buyer},
            "metadata": {"productId": product_id},
        },
    }

@pytest.fixture()
def product(seed):
    company = seed.company()
    return seed.product(seed.user(company=company))

def drain():
    return importlib.import_module("services.webhooks").process_pending_events()

@pytest.mark.unit
def test_tampered_body_rejected_and_nothing_written(client, sign_webhook, db, seed, product):
    body, headers = sign_webhook(succeeded_event(product.id))
    r = client.post("/api/webhooks/whop", data=body.replace("1500", "1"), headers=headers)
    assert r.status_code == 400
    assert r.get_json()["error"] == "invalid_signature"
    assert db.query(seed.models.WebhookEvent).count() == 0
    assert drain() == {"processed": 0, "ignored": 0, "failed": 0}
    assert db.query(seed.models.Purchase).count() == 0

@pytest.mark.unit
def test_missing_or_stale_signature_rejected(client, sign_webhook, product):
    body, _ = sign_webhook(succeeded_event(product.id))
    r = client.post("/api/webhooks/whop", data=body, headers={"Content-Type": "application/json"})
    assert r.status_code == 400
    body, headers = sign_webhook(succeeded_event(product.id), timestamp=time.time() - 3600)
    r = client.post("/api/webhooks/whop", data=body, headers=headers)
    assert r.status_code == 400

@pytest.mark.unit
def test_missing_secret_is_a_server_error(app_module, client, sign_webhook, monkeypatch, product):
    Config = importlib.import_module("core.config").Config
    monkeypatch.setattr(Config, "WHOP_WEBHOOK_SECRET", "")
    body, headers = sign_webhook(succeeded_event(product.id))
    r = client.post("/api/webhooks/whop", data=body, headers=headers)
    assert r.status_code == 500

@pytest.mark.unit
def test_payment_succeeded_creates_one_paid_purchase(client, sign_webhook, db, seed, product):
    body, headers = sign_webhook(succeeded_event(product.id))
    r = client.post("/api/webhooks/whop", data=body, headers=headers)
    assert r.status_code == 200
    assert r.get_json() == {"status": "received", "eventId": "evt_1"}
    # redelivery is recorded once
    r = client.post("/api/webhook", data=body, headers=headers)
    assert r.get_json()["status"] == "duplicate"
    assert db.query(seed.models.WebhookEvent).count() == 1

    assert drain() == {"processed": 1, "ignored": 0, "failed": 0}
    [purchase] = db.query(seed.models.Purchase).all()
    assert purchase.status == "paid"
    assert purchase.amount_cents == 1500
    assert purchase.product_id == product.id
    assert purchase.whop_payment_id == "pay_1"
    buyer = db.get(seed.models.User, purchase.buyer_id)
    assert (buyer.whop_user_id, buyer.role) == ("buyer_1", "buyer")
    event = db.query(seed.models.WebhookEvent).one()
    assert event.status == "processed"
    assert event.attempts == 1
    assert event.processed_at is not None
    assert drain() == {"processed": 0, "ignored": 0, "failed": 0}

@pytest.mark.unit
def test_rotated_secret_accepted(client, sign_webhook, product):
    body, headers = sign_webhook(succeeded_event(product.id), secret="whsec_old")
    r = client.post("/api/webhooks/whop", data=body, headers=headers)
    assert r.status_code == 200

@pytest.mark.unit
def test_existing_buyer_reused(client, sign_webhook, db, seed, product):
    existing = seed.user(whop_user_id="buyer_1", role="buyer")
    for i in (1, 2):
        body, headers = sign_webhook(succeeded_event(product.id, payment_id=f"pay_{i}", event_id=f"evt_{i}"))
        client.post("/api/webhooks/whop", data=body, headers=headers)
    assert drain()["processed"] == 2
    purchases = db.query(seed.models.Purchase).all()
    assert {p.buyer_id for p in purchases} == {existing.id}
    assert db.query(seed.models.User).filter_by(whop_user_id="buyer_1").count() == 1

@pytest.mark.unit
def test_refund_flips_only_the_matching_purchase(client, sign_webhook, db, seed, product):
    buyer = seed.user(whop_user_id="buyer_1", role="buyer")
    seed.purchase(product, buyer, payment_id="pay_1")
    seed.purchase(product, buyer, payment_id="pay_2")
    body, headers = sign_webhook({"action": "payment.refunded", "data": {"payment_id": "pay_1"}})
    r = client.post("/api/webhooks/whop", data=body, headers=headers)
    assert r.get_json()["eventId"] == "payment.refunded:pay_1"
    assert drain()["processed"] == 1
    db.expire_all()
    statuses = {p.whop_payment_id: p.status for p in db.query(seed.models.Purchase).all()}
    assert statuses == {"pay_1": "refunded", "pay_2": "paid"}

@pytest.mark.unit
def test_refund_for_unknown_payment_is_recorded_as_failed(client, sign_webhook, db, seed):
    body, headers = sign_webhook({"id": "evt_r", "type": "payment.refunded", "data": {"payment_id": "pay_missing"}})
    client.post("/api/webhooks/whop", data=body, headers=headers)
    assert drain() == {"processed": 0, "ignored": 0, "failed": 1}
    event = db.query(seed.models.WebhookEvent).one()
    assert event.status == "failed"
    assert "pay_missing" in event.error
    # failures are not retried
    assert drain()["failed"] == 0

@pytest.mark.unit
def test_events_without_product_or_unknown_type_are_ignored(client, sign_webhook, db, seed):
    event = succeeded_event(None)
    event["data"]["metadata"] = {}
    body, headers = sign_webhook(event)
    client.post("/api/webhooks/whop", data=body, headers=headers)
    body, headers = sign_webhook({"id": "evt_m", "type": "membership.went_valid", "data": {}})
    client.post("/api/webhooks/whop", data=body, headers=headers)
    assert drain() == {"processed": 0, "ignored": 2, "failed": 0}
    assert db.query(seed.models.Purchase).count() == 0

@pytest.mark.unit
def test_internal_drain_endpoint(client, sign_webhook, product):
    body, headers = sign_webhook(succeeded_event(product.id))
    client.post("/api/webhooks/whop", data=body, headers=headers)
    r = client.post("/internal/webhooks/process")
    assert r.status_code == 200
    assert r.get_json()["counts"]["processed"] == 1
    r = client.post("/internal/webhooks/process", environ_base={"REMOTE_ADDR": "10.0.0.9"})
    assert r.status_code == 403

@pytest.mark.unit
def test_verify_signature_unit(app_module):
    webhooks = importlib.import_module("services.webhooks")
    body = json.dumps({"id": "evt"})
    ts = 1700000000
    sig = webhooks.sign(body, "s1", ts)
    assert webhooks.verify_signature(body.encode(), f"t={ts},v1={sig}", ["s0", "s1"], tolerance=0)
    assert webhooks.verify_signature(body, f"t={ts},v1=deadbeef,v1={sig}", ["s1"], tolerance=60, now=ts + 30)
    with pytest.raises(webhooks.SignatureError):
        webhooks.verify_signature(body, f"t={ts},v1={sig}", ["s1"], tolerance=60, now=ts + 120)
    with pytest.raises(webhooks.SignatureError):
        webhooks.verify_signature(body, f"v1={sig}", ["s1"], tolerance=0)
    with pytest.raises(webhooks.SignatureError):
        webhooks.verify_signature(body, f"t=abc,v1={sig}", ["s1"], tolerance=0)

@pytest.mark.unit
@pytest.mark.parametrize("data", [
    {"payment_id": "pay_x", "buyer": "user_str", "amount": 100},
    {"payment_id": "pay_x", "buyer": {"id": "b"}, "amount": 100, "metadata": "not-an-object"},
    "not-an-object",
])
def test_malformed_event_data_fails_only_that_event(client, sign_webhook, db, seed, product, data):
    if isinstance(data, dict) and "metadata" not in data:
        data["metadata"] = {"productId": product.id}
    body, headers = sign_webhook({"id": "evt_bad", "type": "payment.succeeded", "data": data})
    assert client.post("/api/webhooks/whop", data=body, headers=headers).status_code == 200
    body, headers = sign_webhook(succeeded_event(product.id, event_id="evt_good"))
    client.post("/api/webhooks/whop", data=body, headers=headers)
    assert drain() == {"processed": 1, "ignored": 0, "failed": 1}
    bad = db.query(seed.models.WebhookEvent).filter_by(event_id="evt_bad").one()
    assert bad.status == "failed"
    assert bad.error.startswith("invalid event data")
    assert db.query(seed.models.Purchase).count() == 1

@pytest.mark.unit
def test_missing_amount_is_recorded_as_failed(client, sign_webhook, db, seed, product):
    event = succeeded_event(product.id)
    del event["data"]["amount"]
    body, headers = sign_webhook(event)
    client.post("/api/webhooks/whop", data=body, headers=headers)
    assert drain()["failed"] == 1
    assert "amount missing" in db.query(seed.models.WebhookEvent).one().error
    assert db.query(seed.models.Purchase).count() == 0

@pytest.mark.unit
def test_handler_crash_marks_event_failed(app_module, client, sign_webhook, db, seed, product, monkeypatch):
    webhooks = importlib.import_module("services.webhooks")

    def explode(db, data):
        raise RuntimeError("boom")

    monkeypatch.setitem(webhooks.HANDLERS, "payment.succeeded", explode)
    body, headers = sign_webhook(succeeded_event(product.id))
    client.post("/api/webhooks/whop", data=body, headers=headers)
    assert webhooks.process_pending_events() == {"processed": 0, "ignored": 0, "failed": 1}
    db.expire_all()
    event = db.query(seed.models.WebhookEvent).one()
    assert (event.status, event.error) == ("failed", "boom")

@pytest.mark.unit
def test_worker_loop_survives_errors(app_module, monkeypatch):
    webhooks = importlib.import_module("services.webhooks")
    Config = importlib.import_module("core.config").Config
    monkeypatch.setattr(Config, "WEBHOOK_WORKER_ENABLED", True)
    monkeypatch.setattr(webhooks.time, "sleep", lambda seconds: None)
    runs = []

    def flaky():
        runs.append(1)
        if len(runs) == 1:
            raise RuntimeError("database went away")
        Config.WEBHOOK_WORKER_ENABLED = False
        return {"processed": 0, "ignored": 0, "failed": 0}

    monkeypatch.setattr(webhooks, "process_pending_events", flaky)
    webhooks._loop()
    assert len(runs) == 2

@pytest.mark.unit
def test_non_utf8_body_is_a_client_error(app_module, client, db, seed):
    webhooks = importlib.import_module("services.webhooks")
    body = b'{"id": "\xff\xfe"}'
    ts = int(time.time())
    r = client.post("/api/webhooks/whop", data=body, headers={"whop-signature": f"t={ts},v1=deadbeef"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "invalid_signature"
    sig = webhooks.sign(body, "whsec_current", ts)
    r = client.post("/api/webhooks/whop", data=body, headers={"whop-signature": f"t={ts},v1={sig}"})
    assert r.status_code == 400
    assert r.get_json()["error"] == "invalid_payload"
    assert db.query(seed.models.WebhookEvent).count() == 0
