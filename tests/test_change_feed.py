from repairhub.models.models import Message
from repairhub.services import lifecycle
from repairhub.services.change_feed import DELETE, INSERT, UPDATE, ChangeFeed, eq, feed

from conftest import book_repair


def test_events_published_only_after_commit(db, customer):
    seen = []
    feed.subscribe("repairs", seen.append)
    repair = book_repair(db, customer)
    assert [(e.operation, e.row_id) for e in seen] == [(INSERT, str(repair.id))]

    repair.notes = "Gate code 1234"
    db.flush()
    assert len(seen) == 1
    db.commit()
    assert seen[-1].operation == UPDATE
    assert seen[-1].row["notes"] == "Gate code 1234"


def test_rollback_discards_pending_events(db, customer):
    repair = book_repair(db, customer)
    seen = []
    feed.subscribe("repairs", seen.append)
    repair.notes = "never committed"
    db.flush()
    db.rollback()
    assert seen == []


def test_filter_and_operation_selection(db, customer, technician):
    mine, other = book_repair(db, customer), book_repair(db, customer)
    updates = []
    feed.subscribe("repairs", updates.append, where=eq("id", mine.id), operations=(UPDATE,))
    lifecycle.claim(db, other.id, technician)
    lifecycle.claim(db, mine.id, technician)
    assert len(updates) == 1
    assert updates[0].row["status"] == "confirmed"
    assert updates[0].row["technician_id"] == technician.id


def test_conditional_updates_are_published(db, repair, technician):
    seen = []
    feed.subscribe("repairs", seen.append)
    lifecycle.claim(db, repair.id, technician)
    assert seen[-1].operation == UPDATE
    assert seen[-1].row["status"] == "confirmed"


def test_unsubscribe_stops_delivery(db, customer):
    seen = []
    sub = feed.subscribe("repairs", seen.append)
    book_repair(db, customer)
    sub.unsubscribe()
    book_repair(db, customer)
    assert len(seen) == 1
    assert feed.subscriber_count("repairs") == 0


def test_sequence_numbers_increase():
    local = ChangeFeed()
    seen = []
    local.subscribe("messages", seen.append)
    local.publish("messages", INSERT, {"id": "a"})
    local.publish("messages", DELETE, {"id": "a"})
    assert [e.seq for e in seen] == [1, 2]


def test_broken_subscriber_does_not_block_others():
    local = ChangeFeed()
    seen = []

    def broken(ev):
        raise RuntimeError("boom")

    local.subscribe("repairs", broken)
    local.subscribe("repairs", seen.append)
    local.publish("repairs", UPDATE, {"id": "r1"})
    assert len(seen) == 1


def test_unwatched_tables_are_not_published(db, repair, customer, technician):
    seen = []
    feed.subscribe("audit_logs", seen.append)
    feed.subscribe("messages", seen.append)
    lifecycle.claim(db, repair.id, technician)
    assert seen == []
    db.add(Message(repair_id=repair.id, client_id="c1", sender_id=customer.id, sender_role="customer", body="hi"))
    db.commit()
    assert [e.table for e in seen] == ["messages"]
