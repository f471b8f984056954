"""
Entitlement client facade for Entitlements Service.

Each signed-in session owns an AccountSession. A session resolves at most once
unless the account changes, an explicit re-check is requested, or a boundary
of the decision it holds (trial end, period end, scheduled cancellation) has
passed. Concurrent callers on one session share a single resolution.
"""

import asyncio
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

from shared.errors import IdentityMissing
from shared.logging import get_logger, set_account_context
from shared.metrics import MetricsCollector
from ..cache.redis_cache import RedisDecisionCache
from ..lifecycle.operations import LifecycleOperations, is_already_subscribed
from ..resolver.engine import EntitlementResolver, days_left, utcnow
from ..resolver.models import (
    Account, CheckoutResult, DecisionSource, EntitlementDecision, EntitlementView,
    SubscriptionRecord
)


def format_display_date(value: Optional[datetime]) -> Optional[str]:
    """Render a date the way the UI shows it, e.g. ``March 4, 2026``."""
    if value is None:
        return None
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def decision_boundaries(decision: EntitlementDecision):
    boundaries = [decision.trial_end_date, decision.current_period_end]
    if decision.subscription is not None:
        boundaries.append(decision.subscription.cancel_at)
    return [b for b in boundaries if b is not None]


def build_view(decision: EntitlementDecision, now: datetime, origin: str) -> EntitlementView:
    """Attach the human-facing fields to a decision."""
    access_ends_at = None
    cancel_at = decision.subscription.cancel_at if decision.subscription else None
    if decision.has_access and cancel_at is not None:
        access_ends_at = min(cancel_at, decision.current_period_end or cancel_at)

    return EntitlementView(
        decision=decision,
        trial_end_date_display=format_display_date(decision.trial_end_date),
        days_until_period_end=(
            days_left(decision.current_period_end, now) if decision.current_period_end else None
        ),
        access_ends_at=access_ends_at,
        resolved_at=now,
        origin=origin,
    )


class AccountSession:
    """Single-flight state for one account within one session."""

    def __init__(self, session_id: str, account: Account):
        self.session_id = session_id
        self.account = account
        self.decision: Optional[EntitlementDecision] = None
        self.resolved_at: Optional[datetime] = None
        self.last_seen: Optional[datetime] = None
        self.lock = asyncio.Lock()

    def is_stale(self, now: datetime) -> bool:
        if self.decision is None:
            return True
        return self.decision.has_access and any(b <= now for b in decision_boundaries(self.decision))


class EntitlementClientFacade:
    """Consumer-facing entry point for decisions and lifecycle calls."""

    def __init__(self,
                 resolver: EntitlementResolver,
                 lifecycle: LifecycleOperations,
                 decision_cache: Optional[RedisDecisionCache] = None,
                 session_idle_seconds: float = 1800,
                 max_sessions: int = 10000,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.resolver = resolver
        self.lifecycle = lifecycle
        self.decision_cache = decision_cache
        self.metrics = metrics
        self.clock = clock or utcnow
        self.logger = get_logger("entitlements.facade")
        self.session_idle = timedelta(seconds=session_idle_seconds)
        self.max_sessions = max_sessions
        # Least recently seen first
        self._sessions: "OrderedDict[str, AccountSession]" = OrderedDict()

    def on_account_changed(self, session_id: str, account: Optional[Account]) -> Optional[AccountSession]:
        """Bind the session to an account, replacing state when the account differs."""
        current = self._sessions.get(session_id)

        if account is None:
            if current is not None:
                del self._sessions[session_id]
                self.logger.info("Session signed out", session_id=session_id)
            return None

        now = self.clock()
        if current is not None and current.account == account:
            session = current
        else:
            if current is not None:
                self.logger.info(
                    "Session account changed",
                    session_id=session_id,
                    previous_account_id=current.account.account_id
                )
            session = AccountSession(session_id, account)
            self._sessions[session_id] = session

        session.last_seen = now
        self._sessions.move_to_end(session_id)
        self._evict(now, keep=session_id)
        return session

    def get_session(self, session_id: str) -> Optional[AccountSession]:
        return self._sessions.get(session_id)

    @property
    def session_count(self) -> int:
        return len(self._sessions)

    def _evict(self, now: datetime, keep: str):
        """Forget idle sessions, then the least recently seen beyond the cap."""
        evicted = 0
        for session_id in list(self._sessions):
            session = self._sessions[session_id]
            over_cap = len(self._sessions) > self.max_sessions
            idle = session.last_seen is not None and now - session.last_seen >= self.session_idle
            if not (over_cap or idle):
                break
            if session_id == keep or session.lock.locked():
                continue
            del self._sessions[session_id]
            evicted += 1

        if evicted:
            self.logger.debug("Evicted sessions", count=evicted, remaining=len(self._sessions))

    async def get_view(self, session_id: str, recheck: bool = False) -> EntitlementView:
        """Current decision for the session, resolving only when needed."""
        now = self.clock()
        session = self._sessions.get(session_id)
        if session is None:
            return build_view(EntitlementDecision.no_access(DecisionSource.IDENTITY_MISSING), now, "session")

        set_account_context(account_id=session.account.account_id, session_id=session_id)

        async with session.lock:
            now = self.clock()
            if not recheck and not session.is_stale(now):
                self._count("session")
                return build_view(session.decision, now, "session")

            if not recheck and self.decision_cache is not None:
                cached = await self.decision_cache.get_decision(session_id, session.account.account_id)
                if cached is not None:
                    session.decision = cached
                    session.resolved_at = now
                    self._count("cache")
                    return build_view(cached, now, "cache")

            decision = await self.resolver.resolve(session.account)
            await self._store(session, decision)
            self._count("resolver")
            return build_view(decision, self.clock(), "resolver")

    async def check_subscription(self, session_id: str) -> EntitlementView:
        """Explicit re-check."""
        return await self.get_view(session_id, recheck=True)

    async def create_subscription(self, session_id: str, with_trial: bool = True) -> CheckoutResult:
        session = self._require(session_id)

        if session.decision is not None and is_already_subscribed(session.decision):
            await self.check_subscription(session_id)
            return CheckoutResult(url=None, already_subscribed=True)

        result = await self.lifecycle.create_subscription(session.account, with_trial)
        if result.already_subscribed:
            await self.check_subscription(session_id)
        return result

    async def cancel_subscription(self, session_id: str) -> bool:
        session = self._require(session_id)

        decision = await self.lifecycle.cancel_and_resolve(session.account)
        if decision is None:
            return False

        await self._invalidate_account(session.account.account_id)
        async with session.lock:
            await self._store(session, decision)
        return True

    async def complete_checkout(self, session_id: str, checkout_session_id: str) -> EntitlementView:
        session = self._require(session_id)

        decision = await self.lifecycle.complete_checkout(session.account, checkout_session_id)
        await self._invalidate_account(session.account.account_id)
        async with session.lock:
            await self._store(session, decision)
        return build_view(decision, self.clock(), "resolver")

    async def apply_billing_event(self, event_type: str, payload: Dict[str, Any]) -> Optional[SubscriptionRecord]:
        """Apply a provider event and make the account's sessions re-resolve."""
        record = await self.lifecycle.apply_billing_event(event_type, payload)
        if record is not None:
            await self.invalidate_account(record.account_id)
        return record

    async def logout(self, session_id: str):
        """Reset to no access and forget the session's single-flight state."""
        self.on_account_changed(session_id, None)
        if self.decision_cache is not None:
            await self.decision_cache.invalidate_session(session_id)

    async def invalidate_account(self, account_id: str):
        """Force every session of the account to re-resolve on its next view."""
        for session in self._sessions.values():
            if session.account.account_id == account_id:
                session.decision = None
        await self._invalidate_account(account_id)

    def _require(self, session_id: str) -> AccountSession:
        session = self._sessions.get(session_id)
        if session is None:
            raise IdentityMissing()
        return session

    async def _store(self, session: AccountSession, decision: EntitlementDecision):
        session.decision = decision
        session.resolved_at = self.clock()
        if self.decision_cache is not None:
            await self.decision_cache.set_decision(
                session.session_id, session.account.account_id, decision, session.resolved_at
            )

    async def _invalidate_account(self, account_id: str):
        if self.decision_cache is not None:
            await self.decision_cache.invalidate_account(account_id)

    def _count(self, origin: str):
        if self.metrics:
            self.metrics.increment_counter("session_decisions_total", origin=origin)
