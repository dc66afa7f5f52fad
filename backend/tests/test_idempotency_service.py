from datetime import datetime, timedelta

from app.db.models import IdempotencyRecord
from app.services.idempotency_service import IdempotencyStore

ENDPOINT = "POST /processes/1/sync"


def test_lookup_without_key_is_noop(db, user):
    store = IdempotencyStore(ttl_hours=1)
    store.save(db, None, user.id, ENDPOINT, 200, {"ok": True})

    assert store.lookup(db, None, user.id, ENDPOINT) is None
    assert db.query(IdempotencyRecord).count() == 0


def test_saved_response_is_replayed(db, user):
    store = IdempotencyStore(ttl_hours=1)
    store.save(db, "k1", user.id, ENDPOINT, 202, {"sync": {"status": "processing"}})

    assert store.lookup(db, "k1", user.id, ENDPOINT) == (202, {"sync": {"status": "processing"}})


def test_first_writer_wins(db, user):
    store = IdempotencyStore(ttl_hours=1)
    store.save(db, "k1", user.id, ENDPOINT, 200, {"n": 1})
    store.save(db, "k1", user.id, ENDPOINT, 200, {"n": 2})

    assert store.lookup(db, "k1", user.id, ENDPOINT) == (200, {"n": 1})


def test_key_is_scoped_to_endpoint(db, user):
    store = IdempotencyStore(ttl_hours=1)
    store.save(db, "k1", user.id, ENDPOINT, 200, {"n": 1})

    assert store.lookup(db, "k1", user.id, "POST /processes/2/sync") is None


def test_expired_rows_are_ignored_and_purged(db, user):
    store = IdempotencyStore(ttl_hours=1)
    store.save(db, "k1", user.id, ENDPOINT, 200, {"n": 1})

    later = datetime.utcnow() + timedelta(hours=2)
    assert store.purge_expired(db, now=later) == 1
    assert store.lookup(db, "k1", user.id, ENDPOINT) is None
