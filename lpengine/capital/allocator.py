"""Capital accounts, plan approval and settlement.

Tracks available and reserved capital per (venue, asset). Approval moves a
plan's commitments from available to reserved atomically across all the
accounts it touches; settlement releases the reservation and applies the
realized outcome.
"""

from __future__ import annotations

import itertools
import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from lpengine.config import RiskConfig
from lpengine.errors import InsufficientCapital, RiskBudgetExceeded
from lpengine.types import AccountKey, CapitalAccount, Commitment, Plan, utc_now

logger = logging.getLogger(__name__)

ZERO = Decimal("0")


@dataclass(frozen=True)
class ApprovalToken:
    """Proof that a plan's commitments are reserved."""

    token_id: str
    plan_id: str
    commitments: tuple[Commitment, ...]
    issued_at: datetime = field(default_factory=utc_now)

    def reserved_by_account(self) -> dict[AccountKey, Decimal]:
        return _sum_by_account(self.commitments)


@dataclass(frozen=True)
class SettlementOutcome:
    """Realized effect of an execution.

    ``consumed`` is capital spent per account (fees, transferred principal).
    ``credits`` are amounts received per account; negative credits debit an
    account that held no reservation (e.g. a fee charged at the destination).
    """

    consumed: Mapping[AccountKey, Decimal] = field(default_factory=dict)
    credits: Mapping[AccountKey, Decimal] = field(default_factory=dict)
    completed: bool = True


def _sum_by_account(commitments: Iterable[Commitment]) -> dict[AccountKey, Decimal]:
    totals: dict[AccountKey, Decimal] = defaultdict(lambda: ZERO)
    for commitment in commitments:
        if commitment.amount <= 0:
            raise ValueError(f"commitment on {commitment.venue}/{commitment.asset} must be positive")
        totals[commitment.key] += commitment.amount
    return dict(totals)


class CapitalAllocator:
    def __init__(
        self,
        risk: Optional[RiskConfig] = None,
        *,
        initial_balances: Optional[Mapping[AccountKey, Decimal]] = None,
    ) -> None:
        self._risk = risk or RiskConfig()
        self._accounts: dict[AccountKey, CapitalAccount] = {}
        self._account_locks: dict[AccountKey, threading.Lock] = {}
        self._guard = threading.Lock()
        self._tokens: dict[str, ApprovalToken] = {}
        self._token_ids = itertools.count(1)
        if initial_balances:
            for (venue, asset), amount in initial_balances.items():
                self.credit(venue, asset, amount)

    def _lock_for(self, key: AccountKey) -> threading.Lock:
        with self._guard:
            lock = self._account_locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._account_locks[key] = lock
                self._accounts.setdefault(key, CapitalAccount(venue=key[0], asset=key[1]))
            return lock

    def _locked(self, keys: Iterable[AccountKey]) -> list[threading.Lock]:
        # Fixed global order so concurrent multi-account operations cannot deadlock.
        locks = [self._lock_for(key) for key in sorted(set(keys))]
        for lock in locks:
            lock.acquire()
        return locks

    @staticmethod
    def _unlock(locks: list[threading.Lock]) -> None:
        for lock in reversed(locks):
            lock.release()

    def account(self, venue: str, asset: str) -> CapitalAccount:
        """Get an account (created with zero balances on first reference)."""
        self._lock_for((venue, asset))
        return self._accounts[(venue, asset)]

    def accounts(self) -> list[CapitalAccount]:
        with self._guard:
            return sorted(self._accounts.values(), key=lambda a: a.key)

    def headroom(self, venue: str, asset: str) -> Decimal:
        """Largest amount a single approval could reserve on the account now."""
        key = (venue, asset)
        with self._lock_for(key):
            account = self._accounts[key]
            budget = self._risk.max_risk_fraction * account.total - account.reserved
            return max(min(account.available, budget), ZERO)

    def credit(self, venue: str, asset: str, amount: Decimal) -> CapitalAccount:
        """Add funds to an account's available balance."""
        if amount <= 0:
            raise ValueError("Credit amount must be positive")
        key = (venue, asset)
        with self._lock_for(key):
            account = self._accounts[key]
            self._accounts[key] = CapitalAccount(
                venue=venue, asset=asset, available=account.available + amount, reserved=account.reserved
            )
            return self._accounts[key]

    def debit(self, venue: str, asset: str, amount: Decimal) -> CapitalAccount:
        """Remove funds from an account's available balance."""
        if amount <= 0:
            raise ValueError("Debit amount must be positive")
        key = (venue, asset)
        with self._lock_for(key):
            account = self._accounts[key]
            if account.available < amount:
                raise InsufficientCapital(
                    venue,
                    asset,
                    amount,
                    account.available,
                    f"Insufficient available balance for {venue}/{asset}: have {account.available}, need {amount}",
                )
            self._accounts[key] = CapitalAccount(
                venue=venue, asset=asset, available=account.available - amount, reserved=account.reserved
            )
            return self._accounts[key]

    def approve(self, plan: Plan) -> ApprovalToken:
        """Reserve every commitment of ``plan`` or none of them.

        Raises:
            InsufficientCapital: a commitment exceeds the account's available balance
            RiskBudgetExceeded: the reservation would exceed the account's risk budget
        """
        requested = _sum_by_account(plan.commitments)
        locks = self._locked(requested)
        try:
            for (venue, asset), amount in requested.items():
                account = self._accounts[(venue, asset)]
                if amount > account.available:
                    raise InsufficientCapital(
                        venue,
                        asset,
                        amount,
                        account.available,
                        f"plan {plan.id}: needs {amount} {asset} on {venue}, {account.available} available",
                    )
                budget = self._risk.max_risk_fraction * account.total
                if account.reserved + amount > budget:
                    raise RiskBudgetExceeded(
                        venue,
                        asset,
                        account.reserved + amount,
                        budget,
                        f"plan {plan.id}: reserving {amount} {asset} on {venue} exceeds risk budget {budget}",
                    )

            for (venue, asset), amount in requested.items():
                account = self._accounts[(venue, asset)]
                self._accounts[(venue, asset)] = CapitalAccount(
                    venue=venue,
                    asset=asset,
                    available=account.available - amount,
                    reserved=account.reserved + amount,
                )

            token = ApprovalToken(
                token_id=f"appr-{next(self._token_ids)}",
                plan_id=plan.id,
                commitments=tuple(plan.commitments),
            )
            with self._guard:
                self._tokens[token.token_id] = token
        finally:
            self._unlock(locks)

        logger.debug("Approved plan %s (%s)", plan.id, token.token_id)
        return token

    def settle(self, token: ApprovalToken, outcome: SettlementOutcome) -> dict[AccountKey, Decimal]:
        """Release ``token``'s reservation and apply the realized outcome.

        For each reserved account the unconsumed part returns to available.
        Consumption beyond the reservation and negative credits are debited
        from available, which may leave an account overdrawn.

        Returns:
            Overdrawn accounts and the amount each is short by (empty when none)
        """
        for key, amount in outcome.consumed.items():
            if amount < 0:
                raise ValueError(f"consumed amount for {key} must be non-negative")

        with self._guard:
            if self._tokens.pop(token.token_id, None) is None:
                raise ValueError(f"approval {token.token_id} is unknown or already settled")

        reserved = token.reserved_by_account()
        overdrawn: dict[AccountKey, Decimal] = {}
        keys = set(reserved) | set(outcome.consumed) | set(outcome.credits)
        locks = self._locked(keys)
        try:
            for key in sorted(keys):
                committed = reserved.get(key, ZERO)
                delta = committed - outcome.consumed.get(key, ZERO) + outcome.credits.get(key, ZERO)
                account = self._accounts[key]
                available = account.available + delta
                if available < 0:
                    overdrawn[key] = -available
                    logger.warning(
                        "Settlement of %s leaves %s/%s overdrawn by %s", token.plan_id, key[0], key[1], -available
                    )
                self._accounts[key] = CapitalAccount(
                    venue=key[0],
                    asset=key[1],
                    available=available,
                    reserved=account.reserved - committed,
                )
        finally:
            self._unlock(locks)

        logger.debug("Settled plan %s (%s, completed=%s)", token.plan_id, token.token_id, outcome.completed)
        return overdrawn

    def release(self, token: ApprovalToken) -> None:
        """Cancel an approval before anything executed."""
        self.settle(token, SettlementOutcome(completed=False))

    def outstanding(self) -> list[ApprovalToken]:
        with self._guard:
            return list(self._tokens.values())
