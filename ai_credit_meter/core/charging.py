"""
Charge coordination: the only path that moves credit balances.

Registered users are charged through the balance store's atomic debit.
Guests are charged against their cookie allowance. Refunds and grants
always append a ledger entry alongside the balance change.

The coordinator never refunds on its own. When an AI call fails after a
charge, the calling endpoint decides whether to call ``refund``.
"""

from dataclasses import dataclass
from typing import Optional, Union

import structlog

from ..storage.models import TransactionType
from ..storage.repository import BalanceStore
from .errors import InsufficientCredits
from .guest import (
    DEFAULT_GUEST_ALLOTMENT,
    GUEST_COOKIE_MAX_AGE,
    GUEST_CREDIT_COOKIE,
    CookieJar,
    GuestCreditTracker,
)
from .policy import CreditPolicy

logger = structlog.get_logger()

DEFAULT_SIGNUP_BONUS = 50


@dataclass(frozen=True)
class Caller:
    """Identity of the current request: a user id, or a guest with cookies."""
    user_id: Optional[str] = None
    cookies: Optional[CookieJar] = None

    @property
    def is_guest(self) -> bool:
        return self.user_id is None

    @classmethod
    def registered(cls, user_id: str) -> "Caller":
        return cls(user_id=user_id)

    @classmethod
    def guest(cls, cookies: CookieJar) -> "Caller":
        return cls(cookies=cookies)


@dataclass(frozen=True)
class ChargeResult:
    """Successful charge, with the balance to display afterwards."""
    feature: str
    credits_used: int
    remaining_balance: int
    is_guest: bool


@dataclass(frozen=True)
class CreditStatus:
    is_guest: bool
    credits: int


class ChargeCoordinator:
    """Checks affordability, deducts credits and keeps the ledger in step."""

    def __init__(
        self,
        store: BalanceStore,
        policy: Optional[CreditPolicy] = None,
        guest_allotment: int = DEFAULT_GUEST_ALLOTMENT,
        guest_cookie_name: str = GUEST_CREDIT_COOKIE,
        guest_cookie_max_age: int = GUEST_COOKIE_MAX_AGE,
        signup_bonus: int = DEFAULT_SIGNUP_BONUS,
    ):
        self.store = store
        self.policy = policy or CreditPolicy()
        self.guest_allotment = guest_allotment
        self.guest_cookie_name = guest_cookie_name
        self.guest_cookie_max_age = guest_cookie_max_age
        self.signup_bonus = signup_bonus

    def _guest_tracker(self, caller: Caller) -> GuestCreditTracker:
        if caller.cookies is None:
            raise ValueError("guest callers need a cookie jar")
        return GuestCreditTracker(
            caller.cookies,
            allotment=self.guest_allotment,
            cookie_name=self.guest_cookie_name,
            max_age=self.guest_cookie_max_age,
        )

    def charge(self, caller: Caller, feature: str) -> ChargeResult:
        """Deduct the feature cost from the caller.

        No partial deduction ever happens: on failure the balance (or
        cookie) is left exactly as it was.

        Raises:
            InsufficientCredits: If the caller cannot afford the feature
        """
        cost = self.policy.cost_of(feature)

        try:
            if caller.is_guest:
                outcome = self._guest_tracker(caller).charge(cost)
                remaining = outcome.remaining
            else:
                remaining = self.store.debit(
                    caller.user_id,
                    cost,
                    f"Used {cost} credits for {feature.replace('_', ' ')}",
                )
        except InsufficientCredits as exc:
            logger.info(
                "Charge refused",
                user_id=caller.user_id,
                feature=feature,
                required=exc.required,
                available=exc.available,
                is_guest=caller.is_guest,
            )
            raise

        logger.info(
            "Charge succeeded",
            user_id=caller.user_id,
            feature=feature,
            cost=cost,
            remaining=remaining,
            is_guest=caller.is_guest,
        )
        return ChargeResult(
            feature=feature,
            credits_used=cost,
            remaining_balance=remaining,
            is_guest=caller.is_guest,
        )

    def refund(self, user_id: str, amount: int, reason: str) -> int:
        """Give back credits charged for an operation that did not deliver.

        Returns:
            Balance after the refund
        """
        balance = self.store.grant(
            user_id,
            amount,
            TransactionType.REFUND,
            description=f"Refund: {reason}",
        )
        logger.info("Credits refunded", user_id=user_id, amount=amount, reason=reason)
        return balance

    def grant(
        self,
        user_id: str,
        amount: int,
        source: Union[TransactionType, str],
        description: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> int:
        return self.store.grant(
            user_id,
            amount,
            source,
            description=description,
            idempotency_key=idempotency_key,
        )

    def get_balance(self, user_id: str) -> int:
        return self.store.get_balance(user_id)

    def get_credits(self, caller: Caller) -> CreditStatus:
        """Credits to show for either kind of caller."""
        if caller.is_guest:
            return CreditStatus(is_guest=True, credits=self._guest_tracker(caller).remaining())
        return CreditStatus(is_guest=False, credits=self.store.get_balance(caller.user_id))

    def grant_signup_bonus(self, user_id: str) -> Optional[int]:
        """Grant the one-time signup bonus to a newly registered user.

        Returns the new balance, or None if the user already had a bonus.
        The check and the grant are separate steps; the idempotency key
        keeps a racing second call from granting twice.
        """
        if self.store.has_received_signup_bonus(user_id):
            logger.info("Signup bonus already granted", user_id=user_id)
            return None
        return self.store.grant(
            user_id,
            self.signup_bonus,
            TransactionType.SIGNUP_BONUS,
            description=f"Free signup bonus of {self.signup_bonus} credits",
            idempotency_key=f"signup_bonus:{user_id}",
        )

    def purchase_package(self, user_id: str, package_id: str, idempotency_key: Optional[str] = None) -> int:
        """Credit a completed package purchase.

        Raises:
            ValueError: If the package does not exist
        """
        credits = self.policy.package_credits(package_id)
        return self.store.grant(
            user_id,
            credits,
            TransactionType.PURCHASE,
            description=f"Purchased {credits} credits",
            idempotency_key=idempotency_key,
        )
