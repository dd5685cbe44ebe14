"""
Guest credit tracking for unauthenticated callers.

Guests have no server-side record. Their remaining credits live in a plain
integer cookie that the client can read (and edit), so the allowance is a
soft anti-abuse throttle rather than billing. Two simultaneous requests from
the same browser can both read the same value and both succeed; that
under-charge is accepted.
"""

import re
from dataclasses import dataclass
from typing import Optional, Protocol

import structlog

from .errors import InsufficientCredits

logger = structlog.get_logger()

GUEST_CREDIT_COOKIE = "domijob_guest_credits"
DEFAULT_GUEST_ALLOTMENT = 50
GUEST_COOKIE_MAX_AGE = 60 * 60 * 24 * 7  # 7 days

# Leading integer, ignoring any trailing text ("12abc" reads as 12)
_LEADING_INT = re.compile(r"\s*([+-]?\d+)")


class CookieJar(Protocol):
    """Minimal request/response cookie channel the tracker needs."""

    def get(self, name: str) -> Optional[str]:
        ...

    def set(self, name: str, value: str, *, path: str, httponly: bool, max_age: int) -> None:
        ...


@dataclass(frozen=True)
class GuestCharge:
    """Outcome of a successful guest charge."""
    credits_used: int
    remaining: int


class GuestCreditTracker:
    """Reads and decrements the guest credit cookie."""

    def __init__(
        self,
        cookies: CookieJar,
        allotment: int = DEFAULT_GUEST_ALLOTMENT,
        cookie_name: str = GUEST_CREDIT_COOKIE,
        max_age: int = GUEST_COOKIE_MAX_AGE,
    ):
        if allotment < 0:
            raise ValueError("allotment must be >= 0")
        self.cookies = cookies
        self.allotment = allotment
        self.cookie_name = cookie_name
        self.max_age = max_age

    def remaining(self) -> int:
        """Credits left; absent or unparsable cookies fail open to the allotment."""
        raw = self.cookies.get(self.cookie_name)
        if raw is None:
            return self.allotment
        match = _LEADING_INT.match(raw) if isinstance(raw, str) else None
        if match is None:
            logger.warning("Unparsable guest credit cookie", cookie=self.cookie_name)
            return self.allotment
        return int(match.group(1))

    def charge(self, cost: int) -> GuestCharge:
        """Deduct ``cost`` from the cookie.

        Raises:
            InsufficientCredits: If cost exceeds what is left; the cookie is unchanged
        """
        available = self.remaining()
        if available < cost:
            raise InsufficientCredits(required=cost, available=available, is_guest=True)

        updated = available - cost
        self.cookies.set(
            self.cookie_name,
            str(updated),
            path="/",
            httponly=False,
            max_age=self.max_age,
        )
        return GuestCharge(credits_used=cost, remaining=updated)
