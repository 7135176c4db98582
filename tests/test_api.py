import uuid

import httpx

from repairhub.models.models import Notification, Repair
from repairhub.services import notifications

from conftest import auth, make_user, move_to, set_total, signature_data_url


def _book(client, customer, **extra):
    body = {"device": "Pixel 8", "issues": ["battery"], "parts_in_stock": True, "customer_lat": 37.77, "customer_lng": -122.42}
    body.update(extra)
    r = client.post("/repairs", json=body, headers=auth(customer))
    assert r.status_code == 200, r.text
    return r.json()


def test_healthz(client):
    assert client.get("/healthz").json()["status"] == "ok"


def test_register_login_me(client):
    r = client.post("/auth/register", json={"email": "Jo@Repairs.dev", "password": "s3cretpass", "full_name": "Jo"})
    assert r.status_code == 200, r.text
    assert r.json()["role"] == "customer"

    dup = client.post("/auth/register", json={"email": "jo@repairs.dev", "password": "s3cretpass"})
    assert dup.status_code == 409
    assert dup.json()["error"]["title"] == "Conflict"

    bad = client.post("/auth/login", json={"email": "jo@repairs.dev", "password": "wrong-pass"})
    assert bad.status_code == 401

    r = client.post("/auth/login", json={"email": "jo@repairs.dev", "password": "s3cretpass"})
    token = r.json()["access_token"]
    me = client.get("/auth/me", headers={"Authorization": f"Bearer {token}"})
    assert me.json()["email"] == "jo@repairs.dev"


def test_requires_authentication(client):
    r = client.get("/repairs")
    assert r.status_code == 401
    assert r.json()["error"]["status"] == 401


def test_quote(client):
    r = client.post("/repairs/quote", json={"issues": ["screen"], "parts_tier": {"screen": "genuine"}})
    assert r.status_code == 200
    assert r.json()["parts_total"] == "179.00"


def test_claim_conflict_error_body(client, customer, technician, other_technician):
    repair = _book(client, customer)
    assert client.post(f"/repairs/{repair['id']}/claim", headers=auth(technician)).status_code == 200
    r = client.post(f"/repairs/{repair['id']}/claim", headers=auth(other_technician))
    assert r.status_code == 409
    assert r.json()["error"]["code"] == "already_claimed"


def test_customer_cannot_view_someone_elses_repair(client, db, customer, technician):
    repair = _book(client, customer)
    stranger = make_user(db, "customer", "pat@repairs.dev")
    assert client.get(f"/repairs/{repair['id']}", headers=auth(stranger)).status_code == 403
    # Unclaimed jobs are visible to technicians
    assert client.get(f"/repairs/{repair['id']}", headers=auth(technician)).status_code == 200
    assert client.get("/repairs/not-a-uuid", headers=auth(customer)).status_code == 404


def test_queue_lists_unread_badges(client, customer, technician):
    repair = _book(client, customer)
    client.post(f"/repairs/{repair['id']}/claim", headers=auth(technician))
    r = client.post(
        f"/repairs/{repair['id']}/messages", json={"body": "Gate code is 42", "client_id": "abc"}, headers=auth(customer)
    )
    assert r.status_code == 200, r.text
    items = client.get("/repairs", headers=auth(technician)).json()
    assert items[0]["unread_messages"] == 1
    client.post(f"/repairs/{repair['id']}/messages/read", headers=auth(technician))
    assert client.get(f"/repairs/{repair['id']}/messages/unread_count", headers=auth(technician)).json()["unread"] == 0


def test_repair_end_to_end(client, db, customer, technician):
    repair = _book(client, customer)
    rid = repair["id"]
    assert repair["status"] == "pending"
    assert len(repair["progress"]["steps"]) == 7

    tech = auth(technician)
    assert client.post(f"/repairs/{rid}/claim", headers=tech).json()["status"] == "confirmed"
    for expected in ("scheduled", "en_route", "arrived"):
        r = client.post(f"/repairs/{rid}/advance", headers=tech)
        assert r.json()["status"] == expected, r.text

    blocked = client.post(f"/repairs/{rid}/advance", headers=tech)
    assert blocked.json()["error"]["code"] == "intake_signature_required"
    blank = client.post(f"/repairs/{rid}/intake-signature", json={"image": signature_data_url(blank=True)}, headers=tech)
    assert blank.status_code == 422
    signed = client.post(f"/repairs/{rid}/intake-signature", json={"image": signature_data_url()}, headers=tech)
    assert signed.status_code == 200, signed.text
    assert client.post(f"/repairs/{rid}/advance", json={"expected_status": "arrived"}, headers=tech).json()["status"] == "in_progress"

    set_total(db, db.get(Repair, uuid.UUID(rid)), "80.00")

    assert client.get(f"/payments/{rid}", headers=tech).json()["step"] == "tip"
    r = client.post(f"/payments/{rid}/tip", json={"tip_amount": "10"}, headers=tech)
    assert r.json()["amount_due"] == 90
    client.post(f"/payments/{rid}/method", json={"method": "cash"}, headers=tech)

    preview = client.get(f"/payments/{rid}/cash/preview", params={"received": "$95"}, headers=tech).json()
    assert preview["change"] == 5

    short = client.post(f"/payments/{rid}/cash", json={"received": "85"}, headers=tech)
    assert short.status_code == 402
    assert short.json()["error"]["code"] == "insufficient_cash"

    paid = client.post(f"/payments/{rid}/cash", json={"received": "100"}, headers=tech).json()
    assert paid["change"] == 10
    assert paid["step"] == "signature"

    done = client.post(f"/payments/{rid}/signature", json={"image": signature_data_url()}, headers=tech)
    assert done.status_code == 200, done.text
    assert done.json()["step"] == "done"
    assert client.get(f"/repairs/{rid}", headers=auth(customer)).json()["status"] == "complete"

    entries = client.get(f"/repairs/{rid}/audit", headers=auth(customer)).json()
    actions = [e["action"] for e in entries]
    assert "COMPLETE" in actions and "PAYMENT" in actions
    assert all(e["verified"] for e in entries)


def test_signature_files_served_to_parties(client, db, customer, technician):
    repair = db.get(Repair, uuid.UUID(_book(client, customer)["id"]))
    repair = move_to(db, repair, technician, "in_progress")
    key = repair.intake_signature_path
    r = client.get(f"/files/local/{key}", headers=auth(customer))
    assert r.status_code == 200
    assert r.content.startswith(b"\x89PNG")
    links = client.get(f"/repairs/{repair.id}/signatures", headers=auth(customer)).json()
    assert links["intake"].endswith(key)
    assert links["completion"] is None
    stranger = make_user(db, "customer", "lee@repairs.dev")
    assert client.get(f"/files/local/{key}", headers=auth(stranger)).status_code == 403


def test_webhook_requires_secret(client, customer):
    repair = _book(client, customer)
    body = {"repair_id": repair["id"], "status": "completed", "reference": "sq_1"}
    assert client.post("/payments/webhooks/hosted-link", json=body).status_code == 401
    r = client.post("/payments/webhooks/hosted-link", json=body, headers={"X-Webhook-Secret": "wrong"})
    assert r.status_code == 401


def test_realtime_socket_delivers_changes(client, customer, technician):
    repair = _book(client, customer)
    token = auth(customer)["Authorization"].split(" ", 1)[1]
    with client.websocket_connect(f"/realtime/ws?token={token}") as ws:
        ws.send_text("ping")
        assert ws.receive_text() == "pong"
        ws.send_json({"action": "subscribe", "channel": f"repair:{repair['id']}"})
        assert ws.receive_json() == {"event": "subscribed", "data": {"channel": f"repair:{repair['id']}"}}
        client.post(f"/repairs/{repair['id']}/claim", headers=auth(technician))
        msg = ws.receive_json()
        assert msg["event"] == "change"
        assert msg["data"]["table"] == "repairs"
        assert msg["data"]["row"]["status"] == "confirmed"

        ws.send_json({"action": "subscribe", "channel": "queue"})
        assert ws.receive_json()["event"] == "error"


def test_notification_failure_does_not_block_transition(client, db, customer, technician, monkeypatch):
    monkeypatch.setattr(notifications.settings, "enable_email", True)
    monkeypatch.setattr(notifications.settings, "email_api_key", "re_test")

    def boom(to, subject, html):
        raise httpx.ConnectError("mail down")

    monkeypatch.setattr(notifications, "send_email", boom)
    repair = _book(client, customer)
    client.post(f"/repairs/{repair['id']}/claim", headers=auth(technician))
    r = client.post(f"/repairs/{repair['id']}/advance", headers=auth(technician))
    assert r.json()["status"] == "scheduled"
    statuses = {n.template_key: n.status for n in db.query(Notification)}
    assert statuses == {"repair_confirmed": "failed"}


def test_webhook_completes_pending_link(client, db, customer, technician):
    repair = move_to(db, db.get(Repair, uuid.UUID(_book(client, customer)["id"])), technician, "in_progress")
    repair.payment_method = "hosted_link"
    repair.payment_status = "pending"
    repair.payment_reference = "https://pay.example.com/link/xyz"
    db.commit()

    body = {"repair_id": str(repair.id), "status": "completed", "reference": "sq_9"}
    r = client.post("/payments/webhooks/hosted-link", json=body, headers={"X-Webhook-Secret": "test-webhook-secret"})
    assert r.status_code == 200, r.text
    assert r.json() == {"ok": True, "payment_status": "completed"}
    assert client.get(f"/payments/{repair.id}", headers=auth(technician)).json()["step"] == "signature"
