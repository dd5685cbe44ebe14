"""
Response cache for AI outputs.

Entries are keyed by (user, feature, prompt fingerprint) and are served
only while fresh. The table is append-only: a miss is followed by a new
insert, and stale rows simply stop matching. Guests have no stable key and
are never cached.

The read-then-write sequence is not transactional. Two near-simultaneous
misses may both insert; both rows hold equivalent content.
"""

import hashlib
from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog

from ..storage.db import DEFAULT_DB_PATH
from ..storage.models import CachedResponse
from ..storage.repository import fetch_cached_response, insert_cached_response, utc_now

logger = structlog.get_logger()

DEFAULT_FRESHNESS = timedelta(hours=24)


def fingerprint(system_prompt: str, user_prompt: str) -> str:
    """Stable SHA-256 fingerprint of a prompt pair."""
    digest = hashlib.sha256()
    digest.update(system_prompt.encode("utf-8"))
    # Separator keeps ("ab", "c") and ("a", "bc") apart
    digest.update(b"\x00")
    digest.update(user_prompt.encode("utf-8"))
    return digest.hexdigest()


class ResponseCache:
    """Time-bounded cache of raw provider responses."""

    def __init__(
        self,
        db_path: str = DEFAULT_DB_PATH,
        freshness: timedelta = DEFAULT_FRESHNESS,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        if freshness <= timedelta(0):
            raise ValueError("freshness window must be positive")
        self.db_path = db_path
        self.freshness = freshness
        self.clock = clock or utc_now

    def lookup(self, user_id: Optional[str], feature: str, prompt_fingerprint: str) -> Optional[CachedResponse]:
        """Newest fresh entry for the exact key, or None on a miss."""
        if user_id is None:
            return None
        cutoff = self.clock() - self.freshness
        hit = fetch_cached_response(user_id, feature, prompt_fingerprint, cutoff, self.db_path)
        logger.debug(
            "Response cache hit" if hit else "Response cache miss",
            user_id=user_id,
            feature=feature,
        )
        return hit

    def store(self, user_id: Optional[str], feature: str, prompt_fingerprint: str, raw_response: str) -> bool:
        """Insert a new entry. Returns False when the caller is a guest."""
        if user_id is None:
            return False
        insert_cached_response(
            CachedResponse(
                user_id=user_id,
                feature=feature,
                prompt_fingerprint=prompt_fingerprint,
                response=raw_response,
                created_at=self.clock(),
            ),
            self.db_path,
        )
        return True
