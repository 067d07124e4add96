from __future__ import annotations

from contextlib import contextmanager

import pytest
from sqlalchemy.exc import IntegrityError

from prf_vault.challenges import ChallengeCache, DatabaseChallengeStore


class Clock:
    def __init__(self) -> None:
        self.now = 1_000.0

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture(params=["memory", "database"])
def store(request, db, clock):
    if request.param == "memory":
        return ChallengeCache(ttl=300, clock=clock)
    return DatabaseChallengeStore(db, ttl=300, clock=clock)


def test_issue_and_consume_once(store):
    challenge = store.issue("register", "alice")
    assert len(challenge) == 32
    assert store.consume("register", "alice") == challenge
    assert store.consume("register", "alice") is None


def test_reissue_overwrites_pending_challenge(store):
    first = store.issue("register", "alice")
    second = store.issue("register", "alice")
    assert first != second
    assert store.consume("register", "alice") == second


def test_scopes_and_users_are_independent(store):
    reg = store.issue("register", "alice")
    auth = store.issue("authenticate", "alice")
    bob = store.issue("register", "bob")
    assert store.consume("authenticate", "alice") == auth
    assert store.consume("register", "bob") == bob
    assert store.consume("register", "alice") == reg


def test_expired_challenge_is_missing(store, clock):
    store.issue("authenticate", "alice")
    clock.now += 301
    assert store.consume("authenticate", "alice") is None
    # consuming an expired challenge still removes it
    clock.now -= 301
    assert store.consume("authenticate", "alice") is None


def test_consume_unknown_returns_none(store):
    assert store.consume("register", "nobody") is None


def test_purge_expired(clock):
    cache = ChallengeCache(ttl=60, clock=clock)
    cache.issue("register", "alice")
    clock.now += 30
    cache.issue("register", "bob")
    clock.now += 31
    assert cache.purge_expired() == 1
    assert cache.consume("register", "bob") is not None


def test_database_store_shared_between_instances(db, clock):
    issuer = DatabaseChallengeStore(db, clock=clock)
    consumer = DatabaseChallengeStore(db, clock=clock)
    challenge = issuer.issue("register", "alice")
    assert consumer.consume("register", "alice") == challenge
    assert issuer.consume("register", "alice") is None


def test_issue_sweeps_expired_entries(clock):
    cache = ChallengeCache(ttl=60, clock=clock)
    cache.issue("register", "alice")
    clock.now += 61
    cache.issue("authenticate", "bob")
    assert cache.purge_expired() == 0


def test_database_issue_retries_after_conflicting_insert(db, clock, monkeypatch):
    store = DatabaseChallengeStore(db, clock=clock)
    real_session = db.session
    conflicts = []

    @contextmanager
    def racing_session():
        with real_session() as session:
            yield session
            if not conflicts:
                conflicts.append(True)
                raise IntegrityError("INSERT INTO challenges", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(db, "session", racing_session)
    challenge = store.issue("register", "alice")
    monkeypatch.setattr(db, "session", real_session)

    assert conflicts == [True]
    assert store.consume("register", "alice") == challenge


def test_database_issue_gives_up_after_repeated_conflicts(db, clock, monkeypatch):
    store = DatabaseChallengeStore(db, clock=clock)
    real_session = db.session

    @contextmanager
    def conflicting_session():
        with real_session() as session:
            yield session
            raise IntegrityError("INSERT INTO challenges", {}, Exception("UNIQUE constraint failed"))

    monkeypatch.setattr(db, "session", conflicting_session)
    with pytest.raises(IntegrityError):
        store.issue("register", "alice")
