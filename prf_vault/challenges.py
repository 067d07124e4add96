"""Single-use ceremony challenge stores.

A challenge is keyed by ``(scope, key)`` where scope is the ceremony kind and
key the username. Issuing again for the same pair replaces the pending value,
and ``consume`` hands a challenge out at most once.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from typing import Callable, Dict, Optional, Protocol, Tuple

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from .database import Database
from .models import Challenge

LOGGER = logging.getLogger(__name__)

CHALLENGE_SIZE = 32
ISSUE_ATTEMPTS = 3


class ChallengeStore(Protocol):
    def issue(self, scope: str, key: str) -> bytes:
        ...

    def consume(self, scope: str, key: str) -> Optional[bytes]:
        ...


class ChallengeCache:
    """In-process store; only valid when a single worker serves all ceremonies."""

    def __init__(self, ttl: float = 300, clock: Callable[[], float] = time.time) -> None:
        self.ttl = ttl
        self._clock = clock
        self._challenges: Dict[Tuple[str, str], Tuple[bytes, float]] = {}
        self._lock = threading.Lock()

    def issue(self, scope: str, key: str, size: int = CHALLENGE_SIZE) -> bytes:
        challenge = secrets.token_bytes(size)
        now = self._clock()
        with self._lock:
            self._purge_locked(now)
            self._challenges[(scope, key)] = (challenge, now)
        return challenge

    def consume(self, scope: str, key: str) -> Optional[bytes]:
        with self._lock:
            entry = self._challenges.pop((scope, key), None)
        if entry is None:
            return None
        challenge, issued_at = entry
        if self._clock() - issued_at > self.ttl:
            return None
        return challenge

    def purge_expired(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: float) -> int:
        expired = [k for k, (_, issued) in self._challenges.items() if now - issued > self.ttl]
        for k in expired:
            del self._challenges[k]
        return len(expired)


class DatabaseChallengeStore:
    """Challenge table shared by every process using the same database."""

    def __init__(
        self,
        db: Database,
        ttl: float = 300,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.db = db
        self.ttl = ttl
        self._clock = clock

    def issue(self, scope: str, key: str, size: int = CHALLENGE_SIZE) -> bytes:
        challenge = secrets.token_bytes(size)
        attempt = 0
        while True:
            attempt += 1
            try:
                with self.db.session() as session:
                    session.execute(
                        delete(Challenge).where(Challenge.scope == scope, Challenge.key == key)
                    )
                    session.add(
                        Challenge(scope=scope, key=key, value=challenge, issued_at=self._clock())
                    )
            except IntegrityError:
                # A concurrent issue for the same pair inserted between our
                # delete and insert; the latest writer wins.
                if attempt >= ISSUE_ATTEMPTS:
                    raise
                LOGGER.info("Challenge issue for %s/%s raced another writer; retrying", scope, key)
            else:
                return challenge

    def consume(self, scope: str, key: str) -> Optional[bytes]:
        with self.db.session() as session:
            row = session.execute(
                select(Challenge.value, Challenge.issued_at).where(
                    Challenge.scope == scope, Challenge.key == key
                )
            ).first()
            if row is None:
                return None
            value, issued_at = row
            # Conditional delete: only the caller that removes the row owns it.
            result = session.execute(
                delete(Challenge).where(
                    Challenge.scope == scope,
                    Challenge.key == key,
                    Challenge.value == value,
                )
            )
            if result.rowcount != 1:
                return None
        if self._clock() - issued_at > self.ttl:
            return None
        return value
