"""
Entitlement resolver for Entitlements Service.

Branches are evaluated in a fixed order and the first conclusive one wins:

1. administrative override (local only)
2. cached trial or active record that is still within its window (local only)
3. cached record whose window lapsed, written back as inactive/canceled
4. billing provider lookup by email; an active subscription is adopted
5. trial fallback from account age, only when no record exists at all

Provider failures never fail a resolution; they fall through to the most
conservative decision the local state allows.
"""

import asyncio
import dataclasses
import math
import time
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from shared.errors import CacheReadFailed, CacheWriteFailed, OracleUnavailable
from shared.logging import get_logger, set_account_context
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, add_span_event, trace_function
from .models import (
    Account, BillingSubscription, DecisionSource, EntitlementDecision,
    GRANTING_STATUSES, TERMINAL_STATUSES, SubscriptionRecord,
    SubscriptionStatus, SubscriptionSummary
)

SECONDS_PER_DAY = 86400
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def days_left(end: datetime, now: datetime) -> int:
    """Whole days remaining until ``end``, rounded up and never negative."""
    remaining = (end - now).total_seconds()
    return max(0, math.ceil(remaining / SECONDS_PER_DAY))


def summarize(record: SubscriptionRecord) -> SubscriptionSummary:
    return SubscriptionSummary(
        id=record.billing_subscription_id,
        status=record.status,
        current_period_end=record.current_period_end,
        cancel_at=record.cancel_at,
    )


def select_most_recent(subscriptions: List[BillingSubscription]) -> Optional[BillingSubscription]:
    """Pick the most recently created subscription."""
    if not subscriptions:
        return None
    return max(subscriptions, key=lambda s: s.created or _EPOCH)


def report_abandoned_write(logger, account_id: str) -> Callable[[asyncio.Future], None]:
    """Done-callback for a shielded write whose caller stopped waiting."""

    def _report(write: asyncio.Future):
        if write.cancelled():
            logger.warning("Abandoned subscription write cancelled", account_id=account_id)
            return
        error = write.exception()
        if error is not None:
            logger.warning(
                "Abandoned subscription write failed",
                account_id=account_id,
                error=str(error) or type(error).__name__
            )
        else:
            logger.info("Abandoned subscription write completed", account_id=account_id)

    return _report


class EntitlementResolver:
    """Server-authoritative entitlement resolution."""

    def __init__(self,
                 records,
                 oracle,
                 trial_policy=None,
                 default_trial_days: int = 90,
                 oracle_timeout: float = 10.0,
                 cache_timeout: float = 5.0,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.records = records
        self.oracle = oracle
        self.trial_policy = trial_policy or records
        self.default_trial_days = default_trial_days
        self.oracle_timeout = oracle_timeout
        self.cache_timeout = cache_timeout
        self.metrics = metrics
        self.clock = clock or utcnow
        self.logger = get_logger("entitlements.resolver")
        # Corrections the store refused, applied over reads until one lands
        self._unsaved: Dict[str, SubscriptionRecord] = {}

    def pending_record(self, account_id: str) -> Optional[SubscriptionRecord]:
        """Correction for the account that has not reached the store yet."""
        return self._unsaved.get(account_id)

    def discard_pending(self, account_id: str):
        self._unsaved.pop(account_id, None)

    async def record_correction(self,
                                current: Optional[SubscriptionRecord],
                                corrected: SubscriptionRecord) -> bool:
        """Persist a correction made outside resolution.

        Returns False when the store refused it; the correction then still
        governs this process's resolutions and is retried on each of them.
        """
        return await self._write(current, corrected)

    @trace_function("entitlements.resolve")
    async def resolve(self, account: Optional[Account]) -> EntitlementDecision:
        """Produce the access decision for an account."""
        if account is None:
            decision = EntitlementDecision.no_access(DecisionSource.IDENTITY_MISSING)
            self._record_metrics(decision, 0.0)
            return decision

        set_account_context(account_id=account.account_id)
        add_span_attributes(account_id=account.account_id)
        start_time = time.time()
        now = self.clock()

        cache_ok = True
        try:
            record = await self._read_record(account.account_id)
        except CacheReadFailed as e:
            self.logger.warning("Subscription record unreadable, resolving without it", error=e.message)
            record = None
            cache_ok = False

        pending = self._unsaved.get(account.account_id)
        if pending is not None:
            await self._write(record, pending)
            record = pending

        decision = await self._decide(account, record, now, cache_ok)

        self._record_metrics(decision, time.time() - start_time)
        add_span_attributes(has_access=decision.has_access, source=decision.source.value)
        self.logger.info(
            "Entitlement resolved",
            has_access=decision.has_access,
            status=decision.status.value if decision.status else None,
            source=decision.source.value,
            trial_days_left=decision.trial_days_left
        )
        return decision

    async def _decide(self,
                      account: Account,
                      record: Optional[SubscriptionRecord],
                      now: datetime,
                      cache_ok: bool) -> EntitlementDecision:
        if record is not None:
            if record.admin_override:
                return self._override_decision(record, now)

            local = await self._local_verdict(record, now)
            if local is not None:
                return local

        try:
            customer_id, subscription = await self._query_oracle(account)
        except OracleUnavailable as e:
            self.logger.warning("Billing provider unavailable, falling back", error=e.message)
            return await self._without_subscription(account, record, now, cache_ok, oracle_reachable=False)

        if subscription is None:
            return await self._without_subscription(account, record, now, cache_ok, oracle_reachable=True)

        return await self._adopt(account, record, customer_id, subscription, now)

    def _override_decision(self, record: SubscriptionRecord, now: datetime) -> EntitlementDecision:
        """Administrative status is taken as-is; nothing remote is consulted."""
        has_access = record.status in GRANTING_STATUSES
        in_trial = record.status == SubscriptionStatus.TRIALING
        trial_end = record.trial_end_date if in_trial else None
        return EntitlementDecision(
            has_access=has_access,
            status=record.status,
            current_period_end=record.current_period_end,
            trial_days_left=days_left(trial_end, now) if trial_end else 0,
            trial_end_date=trial_end,
            is_in_trial_period=in_trial and has_access,
            subscription=summarize(record),
            source=DecisionSource.OVERRIDE,
        )

    async def _local_verdict(self, record: SubscriptionRecord, now: datetime) -> Optional[EntitlementDecision]:
        """Decide from the cached record alone, or return None to consult the provider."""
        if record.status == SubscriptionStatus.TRIALING:
            trial_end = record.trial_end_date or record.current_period_end
            if trial_end is None:
                return None

            if trial_end <= now:
                corrected = dataclasses.replace(record, status=SubscriptionStatus.INACTIVE)
                await self._write(record, corrected)
                self.logger.info("Trial expired", trial_end_date=trial_end.isoformat())
                return EntitlementDecision.no_access(
                    DecisionSource.CACHE, status=corrected.status, subscription=summarize(corrected)
                )

            return EntitlementDecision(
                has_access=True,
                status=SubscriptionStatus.TRIALING,
                current_period_end=record.current_period_end,
                trial_days_left=days_left(trial_end, now),
                trial_end_date=trial_end,
                is_in_trial_period=True,
                subscription=summarize(record),
                source=DecisionSource.CACHE,
            )

        if record.status == SubscriptionStatus.ACTIVE:
            if record.cancel_at is not None and record.cancel_at <= now:
                corrected = dataclasses.replace(
                    record, status=SubscriptionStatus.CANCELED, trial_end_date=None
                )
                await self._write(record, corrected)
                self.logger.info("Scheduled cancellation reached", cancel_at=record.cancel_at.isoformat())
                return EntitlementDecision.no_access(
                    DecisionSource.CACHE, status=corrected.status, subscription=summarize(corrected)
                )

            if record.current_period_end is None or record.current_period_end <= now:
                # Lapsed or unknown period; the provider may have renewed it
                return None

            if record.trial_end_date is not None:
                await self._write(record, dataclasses.replace(record, trial_end_date=None))

            return self._active_decision(record, DecisionSource.CACHE)

        return None

    async def _without_subscription(self,
                                    account: Account,
                                    record: Optional[SubscriptionRecord],
                                    now: datetime,
                                    cache_ok: bool,
                                    oracle_reachable: bool) -> EntitlementDecision:
        """No active provider subscription is known for the account."""
        if record is not None:
            corrected = record
            if record.status not in TERMINAL_STATUSES and (oracle_reachable or self._lapsed(record, now)):
                corrected = dataclasses.replace(record, status=SubscriptionStatus.INACTIVE, trial_end_date=None)
                await self._write(record, corrected)
            return EntitlementDecision.no_access(
                DecisionSource.CACHE, status=corrected.status, subscription=summarize(corrected)
            )

        if not cache_ok:
            return EntitlementDecision.no_access(DecisionSource.UNAVAILABLE)

        return await self._trial_fallback(account, now)

    async def _trial_fallback(self, account: Account, now: datetime) -> EntitlementDecision:
        """Grant access from account age under the current trial policy."""
        trial_days = await self._default_trial_days()
        trial_end = account.created_at + timedelta(days=trial_days)

        if trial_days <= 0 or now >= trial_end:
            return EntitlementDecision.no_access(DecisionSource.TRIAL_FALLBACK)

        return EntitlementDecision(
            has_access=True,
            trial_days_left=days_left(trial_end, now),
            trial_end_date=trial_end,
            is_in_trial_period=True,
            source=DecisionSource.TRIAL_FALLBACK,
        )

    async def _adopt(self,
                     account: Account,
                     record: Optional[SubscriptionRecord],
                     customer_id: Optional[str],
                     subscription: BillingSubscription,
                     now: datetime) -> EntitlementDecision:
        """Bring the cache in line with the provider's active subscription."""
        base = record or SubscriptionRecord(account_id=account.account_id, status=SubscriptionStatus.INACTIVE)
        expired = subscription.current_period_end is None or subscription.current_period_end <= now

        corrected = dataclasses.replace(
            base,
            status=SubscriptionStatus.INACTIVE if expired else SubscriptionStatus.ACTIVE,
            billing_subscription_id=subscription.id,
            billing_customer_id=customer_id or subscription.customer_id,
            current_period_end=subscription.current_period_end,
            trial_end_date=None,
            cancel_at=subscription.cancel_at,
        )
        await self._write(record, corrected)

        if expired:
            self.logger.info("Provider reported a lapsed active subscription", subscription_id=subscription.id)
            return EntitlementDecision.no_access(
                DecisionSource.ORACLE, status=corrected.status, subscription=summarize(corrected)
            )

        return self._active_decision(corrected, DecisionSource.ORACLE)

    def _active_decision(self, record: SubscriptionRecord, source: DecisionSource) -> EntitlementDecision:
        """Paid period in force; trial information is never reported."""
        return EntitlementDecision(
            has_access=True,
            status=SubscriptionStatus.ACTIVE,
            current_period_end=record.current_period_end,
            trial_days_left=0,
            trial_end_date=None,
            is_in_trial_period=False,
            subscription=SubscriptionSummary(
                id=record.billing_subscription_id,
                status=SubscriptionStatus.ACTIVE,
                current_period_end=record.current_period_end,
                cancel_at=record.cancel_at,
            ),
            source=source,
        )

    def _lapsed(self, record: SubscriptionRecord, now: datetime) -> bool:
        """Whether the record's own dates show its granting window has ended."""
        if record.status == SubscriptionStatus.ACTIVE:
            return record.current_period_end is not None and record.current_period_end <= now
        if record.status == SubscriptionStatus.TRIALING:
            trial_end = record.trial_end_date or record.current_period_end
            return trial_end is not None and trial_end <= now
        return False

    async def _query_oracle(self, account: Account) -> Tuple[Optional[str], Optional[BillingSubscription]]:
        """Look up the account's customer and its most recent active subscription."""

        async def _lookup():
            customer_id = await self.oracle.find_customer(account.email)
            if customer_id is None:
                return None, []
            return customer_id, await self.oracle.list_active_subscriptions(customer_id)

        try:
            customer_id, subscriptions = await asyncio.wait_for(_lookup(), timeout=self.oracle_timeout)
        except asyncio.TimeoutError as e:
            raise OracleUnavailable(
                message="Billing provider timed out",
                details={"timeout_seconds": self.oracle_timeout}
            ) from e

        if len(subscriptions) > 1:
            self.logger.warning(
                "Multiple active subscriptions for customer",
                customer_id=customer_id,
                subscription_ids=[s.id for s in subscriptions]
            )

        return customer_id, select_most_recent(subscriptions)

    async def _read_record(self, account_id: str) -> Optional[SubscriptionRecord]:
        try:
            return await asyncio.wait_for(
                self.records.get_subscription_record(account_id),
                timeout=self.cache_timeout
            )
        except Exception as e:
            raise CacheReadFailed(account_id, details={"error": str(e) or type(e).__name__}) from e

    async def _write(self, current: Optional[SubscriptionRecord], corrected: SubscriptionRecord) -> bool:
        """Persist a correction unless it changes nothing; failures are logged, not raised."""
        if corrected.same_state(current):
            self._unsaved.pop(corrected.account_id, None)
            return True

        try:
            await self._upsert(corrected)
        except CacheWriteFailed as e:
            self.logger.warning("Subscription correction not persisted", error=e.message, details=e.details)
            self._unsaved[corrected.account_id] = corrected
            self._count_write("failed")
            return False

        self._unsaved.pop(corrected.account_id, None)
        add_span_event("subscription_corrected", status=corrected.status.value)
        self._count_write("written")
        return True

    async def _upsert(self, record: SubscriptionRecord) -> None:
        # Shielded so an aborted caller does not abort the write itself
        write = asyncio.ensure_future(self.records.upsert_subscription_record(record))
        try:
            await asyncio.wait_for(asyncio.shield(write), timeout=self.cache_timeout)
        except Exception as e:
            raise CacheWriteFailed(
                record.account_id, details={"error": str(e) or type(e).__name__}
            ) from e
        finally:
            if not write.done():
                write.add_done_callback(report_abandoned_write(self.logger, record.account_id))

    async def _default_trial_days(self) -> int:
        try:
            days = await asyncio.wait_for(
                self.trial_policy.get_default_trial_days(self.default_trial_days),
                timeout=self.cache_timeout
            )
        except Exception as e:
            self.logger.warning("Trial policy unreadable, using configured default", error=str(e))
            return self.default_trial_days
        return max(0, int(days))

    def _count_write(self, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("subscription_cache_writes_total", outcome=outcome)

    def _record_metrics(self, decision: EntitlementDecision, duration: float):
        if self.metrics:
            self.metrics.increment_counter(
                "entitlement_resolutions_total",
                source=decision.source.value,
                decision="granted" if decision.has_access else "denied"
            )
            self.metrics.observe_histogram("entitlement_resolution_duration_seconds", duration)
