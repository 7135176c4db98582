from datetime import datetime, timedelta

import pytest

from repairhub.models.models import ChatLastRead, Message
from repairhub.services import chat, lifecycle
from repairhub.services.errors import ActionForbidden

from conftest import make_user


@pytest.fixture
def claimed(db, repair, technician):
    return lifecycle.claim(db, repair.id, technician)


def test_send_trims_and_records_role(db, claimed, customer):
    msg = chat.send_message(db, claimed.id, customer, "  Is the screen in stock?  ")
    assert msg.body == "Is the screen in stock?"
    assert msg.sender_role == "customer"
    assert msg.sender_name == "Casey Customer"


def test_send_is_idempotent_on_client_id(db, claimed, technician):
    first = chat.send_message(db, claimed.id, technician, "On my way", client_id="local-1")
    again = chat.send_message(db, claimed.id, technician, "On my way", client_id="local-1")
    assert first.id == again.id
    assert db.query(Message).count() == 1


@pytest.mark.parametrize("body", ["", "   ", "x" * 1001])
def test_invalid_bodies_rejected(db, claimed, customer, body):
    with pytest.raises(chat.InvalidMessage):
        chat.send_message(db, claimed.id, customer, body)
    assert db.query(Message).count() == 0


def test_only_parties_can_chat(db, claimed, other_technician):
    with pytest.raises(ActionForbidden):
        chat.send_message(db, claimed.id, other_technician, "hello")
    admin = make_user(db, "admin", "ada@repairs.dev")
    with pytest.raises(ActionForbidden):
        chat.list_messages(db, claimed.id, admin)


def test_unread_counts_only_other_party_after_cursor(db, claimed, customer, technician):
    chat.send_message(db, claimed.id, technician, "Parts arrive tomorrow")
    chat.send_message(db, claimed.id, customer, "Thanks")
    # No cursor yet: every message from the other party is unread
    assert chat.unread_count(db, claimed.id, customer) == 1
    assert chat.unread_count(db, claimed.id, technician) == 1

    chat.mark_read(db, claimed.id, customer, at=datetime.utcnow() + timedelta(seconds=1))
    assert chat.unread_count(db, claimed.id, customer) == 0
    # The technician's badge is unaffected
    assert chat.unread_count(db, claimed.id, technician) == 1

    later = Message(
        repair_id=claimed.id,
        client_id="late",
        sender_id=technician.id,
        sender_role="technician",
        body="Running 5 min late",
        created_at=datetime.utcnow() + timedelta(seconds=5),
    )
    db.add(later)
    db.commit()
    assert chat.unread_count(db, claimed.id, customer) == 1


def test_mark_read_upserts_single_cursor(db, claimed, customer):
    chat.mark_read(db, claimed.id, customer)
    chat.mark_read(db, claimed.id, customer)
    rows = db.query(ChatLastRead).all()
    assert len(rows) == 1
    assert rows[0].user_id == customer.id


def test_unread_counts_for_listing(db, claimed, customer, technician):
    chat.send_message(db, claimed.id, customer, "Hi")
    counts = chat.unread_counts(db, [claimed], technician)
    assert counts == {str(claimed.id): 1}


def test_messages_listed_in_order(db, claimed, customer, technician):
    for i, sender in enumerate([customer, technician, customer]):
        db.add(Message(
            repair_id=claimed.id,
            client_id=f"c{i}",
            sender_id=sender.id,
            sender_role="customer" if sender is customer else "technician",
            body=f"m{i}",
            created_at=datetime(2026, 1, 1, 12, 0, i),
        ))
    db.commit()
    assert [m.body for m in chat.list_messages(db, claimed.id, customer)] == ["m0", "m1", "m2"]
