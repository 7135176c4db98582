from decimal import Decimal
from urllib.parse import unquote

import json
import pytest

from repairhub.models.models import AuditLog
from repairhub.services import lifecycle, payment_flow
from repairhub.services.errors import ActionForbidden, PaymentCaptureFailed, TransitionRejected
from repairhub.services.payment_providers import build_nfc_deep_link, generate_qr_code_png, to_cents
from repairhub.services.signatures import InvalidSignature

from conftest import move_to, set_total, signature_png


class FakeLinkClient:
    def __init__(self, url="https://pay.example.com/link/abc", error=None):
        self.url = url
        self.error = error
        self.calls = []

    def create(self, amount, description, redirect_url):
        self.calls.append((amount, description, redirect_url))
        if self.error is not None:
            raise self.error
        return self.url


@pytest.fixture
def working(db, repair, technician, storage):
    repair = move_to(db, repair, technician, "in_progress", storage)
    return set_total(db, repair, "80.00")


@pytest.mark.parametrize(
    "typed,expected",
    [("$1,234.50", "1234.50"), ("12.3.4", "12.34"), ("abc", ""), (".", "."), ("", "")],
)
def test_sanitize_amount(typed, expected):
    assert payment_flow.sanitize_amount(typed) == expected


def test_cash_summary_change_and_shortfall():
    due = Decimal("42.50")
    ok = payment_flow.cash_summary(due, "50")
    assert ok["sufficient"] and ok["change"] == Decimal("7.50")
    short = payment_flow.cash_summary(due, "40")
    assert not short["sufficient"]
    assert short["change"] is None
    assert short["shortfall"] == Decimal("2.50")
    empty = payment_flow.cash_summary(due, "")
    assert empty["received"] is None and not empty["sufficient"]


def test_amount_due_includes_tip(db, working, technician):
    state = payment_flow.select_tip(db, working.id, technician, Decimal("10"))
    assert state["step"] == "method"
    assert state["amount_due"] == Decimal("90.00")


def test_negative_tip_rejected(db, working, technician):
    with pytest.raises(PaymentCaptureFailed):
        payment_flow.select_tip(db, working.id, technician, Decimal("-1"))


def test_payment_requires_in_progress_and_assignment(db, repair, technician, other_technician):
    lifecycle.claim(db, repair.id, technician)
    with pytest.raises(TransitionRejected) as exc:
        payment_flow.select_tip(db, repair.id, technician, 0)
    assert exc.value.code == "not_in_progress"
    with pytest.raises(ActionForbidden):
        payment_flow.select_tip(db, repair.id, other_technician, 0)


def test_cash_payment_returns_change(db, working, technician):
    payment_flow.select_tip(db, working.id, technician, Decimal("10"))
    payment_flow.select_method(db, working.id, technician, "cash")
    state = payment_flow.capture_cash(db, working.id, technician, "100")
    assert state["change"] == Decimal("10.00")
    assert state["payment_status"] == "completed"
    assert state["step"] == "signature"
    db.refresh(working)
    assert working.cash_received == Decimal("100.00")
    assert working.paid_at is not None
    assert working.status == "in_progress"


def test_short_cash_leaves_payment_open(db, working, technician):
    payment_flow.select_method(db, working.id, technician, "cash")
    with pytest.raises(PaymentCaptureFailed) as exc:
        payment_flow.capture_cash(db, working.id, technician, "79.99")
    assert exc.value.code == "insufficient_cash"
    assert "0.01" in exc.value.detail
    db.refresh(working)
    assert working.payment_status == "unpaid"
    assert working.cash_received is None


def test_cash_cannot_be_collected_twice(db, working, technician):
    payment_flow.select_method(db, working.id, technician, "cash")
    payment_flow.capture_cash(db, working.id, technician, "80")
    with pytest.raises(TransitionRejected) as exc:
        payment_flow.capture_cash(db, working.id, technician, "80")
    assert exc.value.code == "already_paid"


def test_split_card_leg_is_remainder(db, working, technician):
    set_total(db, working, "60.00")
    payment_flow.select_method(db, working.id, technician, "split")
    state = payment_flow.record_split(db, working.id, technician, "20")
    assert state["split_cash_amount"] == Decimal("20.00")
    assert state["card_amount"] == Decimal("40.00")

    client = FakeLinkClient()
    result = payment_flow.start_hosted_link(db, working.id, technician, client=client)
    assert client.calls[0][0] == Decimal("40.00")
    assert result["amount"] == Decimal("40.00")
    assert result["payment_status"] == "pending"


def test_method_locked_while_link_outstanding(db, working, technician):
    set_total(db, working, "60.00")
    payment_flow.select_method(db, working.id, technician, "split")
    payment_flow.record_split(db, working.id, technician, "20")
    client = FakeLinkClient()
    payment_flow.start_hosted_link(db, working.id, technician, client=client)

    with pytest.raises(TransitionRejected) as exc:
        payment_flow.select_method(db, working.id, technician, "hosted_link")
    assert exc.value.code == "payment_pending"
    db.refresh(working)
    assert working.payment_status == "pending"
    assert working.split_cash_amount == Decimal("20.00")
    assert len(client.calls) == 1

    # A declined link frees the wizard again
    payment_flow.mark_payment_failed(db, working.id, reason="card_declined")
    assert payment_flow.select_method(db, working.id, technician, "cash")["payment_method"] == "cash"


@pytest.mark.parametrize("cash", ["0", "60", "75", ""])
def test_split_cash_must_be_partial(db, working, technician, cash):
    set_total(db, working, "60.00")
    with pytest.raises(PaymentCaptureFailed):
        payment_flow.record_split(db, working.id, technician, cash)


def test_split_card_leg_needs_cash_first(db, working, technician):
    payment_flow.select_method(db, working.id, technician, "split")
    with pytest.raises(PaymentCaptureFailed) as exc:
        payment_flow.start_hosted_link(db, working.id, technician, client=FakeLinkClient())
    assert exc.value.code == "split_cash_missing"


def test_hosted_link_failure_writes_nothing(db, working, technician):
    payment_flow.select_method(db, working.id, technician, "hosted_link")
    client = FakeLinkClient(error=PaymentCaptureFailed("down", code="provider_unreachable"))
    with pytest.raises(PaymentCaptureFailed):
        payment_flow.start_hosted_link(db, working.id, technician, client=client)
    db.refresh(working)
    assert working.payment_status == "unpaid"
    assert working.payment_reference is None
    assert db.query(AuditLog).filter(AuditLog.action == "PAYMENT_LINK").count() == 0


def test_hosted_link_completed_by_webhook(db, working, technician):
    payment_flow.select_method(db, working.id, technician, "hosted_link")
    result = payment_flow.start_hosted_link(db, working.id, technician, client=FakeLinkClient())
    assert result["url"] == "https://pay.example.com/link/abc"
    assert payment_flow.resume_step(working) == "capture"

    paid = payment_flow.mark_payment_completed(db, working.id, reference="sq_123")
    assert paid.payment_status == "completed"
    assert paid.payment_reference == "sq_123"
    # Replayed webhook is a no-op
    assert payment_flow.mark_payment_completed(db, working.id).payment_status == "completed"
    assert payment_flow.resume_step(paid) == "signature"
    log = db.query(AuditLog).filter(AuditLog.action == "PAYMENT").one()
    assert log.source == "webhook"


def test_hosted_link_failure_webhook(db, working, technician):
    payment_flow.select_method(db, working.id, technician, "hosted_link")
    payment_flow.start_hosted_link(db, working.id, technician, client=FakeLinkClient())
    failed = payment_flow.mark_payment_failed(db, working.id, reason="card_declined")
    assert failed.payment_status == "failed"
    assert payment_flow.resume_step(failed) == "capture"


def test_nfc_callback(db, working, technician):
    payment_flow.select_method(db, working.id, technician, "nfc")
    launch = payment_flow.launch_nfc(db, working.id, technician)
    assert launch["url"].startswith("square-commerce-v1://payment/create?data=")

    with pytest.raises(PaymentCaptureFailed) as exc:
        payment_flow.nfc_callback(db, working.id, technician, "error", "payment_canceled")
    assert exc.value.code == "nfc_failed"
    db.refresh(working)
    assert working.payment_status == "unpaid"

    state = payment_flow.nfc_callback(db, working.id, technician, "ok", "txn_42")
    assert state["payment_status"] == "completed"
    assert state["payment_method"] == "nfc"
    assert state["step"] == "signature"


def test_nfc_deep_link_payload():
    url = build_nfc_deep_link(Decimal("40.00"), "r-1", "https://tech.example.com/cb", notes="Pixel repair")
    payload = json.loads(unquote(url.split("?data=", 1)[1]))
    assert payload["amount_money"] == {"amount": 4000, "currency_code": "USD"}
    assert payload["state"] == "r-1"
    assert payload["callback_url"] == "https://tech.example.com/cb"


def test_money_helpers():
    assert to_cents(Decimal("12.34")) == 1234
    assert generate_qr_code_png("https://pay.example.com/x").startswith(b"\x89PNG")


def test_resume_step_from_persisted_fields(db, working, technician):
    assert payment_flow.resume_step(working) == "tip"
    payment_flow.select_method(db, working.id, technician, "cash")
    db.refresh(working)
    assert payment_flow.resume_step(working) == "capture"


def test_signature_and_finalize(db, working, technician, storage):
    with pytest.raises(TransitionRejected) as exc:
        payment_flow.finalize(db, working.id, technician)
    assert exc.value.code == "payment_required"
    with pytest.raises(TransitionRejected):
        payment_flow.submit_signature(db, working.id, technician, signature_png(), storage)

    payment_flow.select_method(db, working.id, technician, "cash")
    payment_flow.capture_cash(db, working.id, technician, "80")
    with pytest.raises(TransitionRejected) as exc:
        payment_flow.finalize(db, working.id, technician)
    assert exc.value.code == "signature_required"

    with pytest.raises(InvalidSignature):
        payment_flow.submit_signature(db, working.id, technician, signature_png(blank=True), storage)
    done = payment_flow.submit_signature(db, working.id, technician, signature_png(transparent=False), storage)
    assert done.status == "complete"
    assert done.completed_at is not None
    assert payment_flow.resume_step(done) == "done"
    assert storage.exists(done.completion_signature_path)
