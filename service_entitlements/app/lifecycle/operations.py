"""
Subscription lifecycle operations for Entitlements Service.

These are user- or admin-initiated actions that expect a definite outcome,
so failures surface as LifecycleOperationFailed instead of being absorbed.
"""

import asyncio
import dataclasses
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from shared.errors import (
    AuthorizationError, IdentityMissing, LifecycleOperationFailed,
    OracleUnavailable, ValidationError
)
from shared.logging import get_logger, set_account_context
from shared.metrics import MetricsCollector
from shared.tracing import add_span_attributes, trace_function
from ..billing.client import MAPPING_ERRORS, map_invoice_subscription_id, map_subscription
from ..resolver.engine import EntitlementResolver, report_abandoned_write, utcnow
from ..resolver.models import (
    Account, BillingSubscription, CheckoutResult, EntitlementDecision, GRANTING_STATUSES,
    SubscriptionRecord, SubscriptionStatus
)

# Admin-created records without a provider subscription run for a year by default
ADMIN_DEFAULT_PERIOD = timedelta(days=365)

SUBSCRIPTION_EVENTS = frozenset({
    "customer.subscription.created",
    "customer.subscription.updated",
    "customer.subscription.deleted",
})
INVOICE_PAID = "invoice.paid"


def subscription_status(subscription: BillingSubscription, now: datetime) -> SubscriptionStatus:
    """Local status for a provider subscription; a lapsed active period is inactive."""
    try:
        status = SubscriptionStatus(subscription.status)
    except ValueError:
        return SubscriptionStatus.INACTIVE
    if status == SubscriptionStatus.ACTIVE and (
            subscription.current_period_end is None or subscription.current_period_end <= now):
        return SubscriptionStatus.INACTIVE
    return status


def apply_subscription(base: SubscriptionRecord,
                       subscription: BillingSubscription,
                       status: SubscriptionStatus,
                       customer_id: Optional[str] = None) -> SubscriptionRecord:
    """Copy the provider's view onto a record; only a trialing record keeps a trial end."""
    return dataclasses.replace(
        base,
        status=status,
        billing_subscription_id=subscription.id,
        billing_customer_id=customer_id or subscription.customer_id or base.billing_customer_id,
        current_period_end=subscription.current_period_end,
        trial_end_date=subscription.trial_end if status == SubscriptionStatus.TRIALING else None,
        cancel_at=subscription.cancel_at,
    )


def is_already_subscribed(decision: EntitlementDecision) -> bool:
    """An active paid period, or a provider-backed trial, is already a subscription."""
    if not decision.has_access or decision.status is None:
        return False
    if decision.status == SubscriptionStatus.ACTIVE:
        return True
    return (decision.status == SubscriptionStatus.TRIALING
            and decision.subscription is not None
            and decision.subscription.id is not None)


class LifecycleOperations:
    """Create, cancel and complete subscriptions; administer overrides and trial policy."""

    def __init__(self,
                 resolver: EntitlementResolver,
                 records,
                 oracle,
                 cancel_at_period_end: bool = True,
                 default_trial_days: int = 90,
                 store_timeout: float = 5.0,
                 metrics: Optional[MetricsCollector] = None,
                 clock: Optional[Callable[[], datetime]] = None):
        self.resolver = resolver
        self.records = records
        self.oracle = oracle
        self.cancel_at_period_end = cancel_at_period_end
        self.default_trial_days = default_trial_days
        self.store_timeout = store_timeout
        self.metrics = metrics
        self.clock = clock or utcnow
        self.logger = get_logger("entitlements.lifecycle")

    @trace_function("lifecycle.create_subscription")
    async def create_subscription(self, account: Optional[Account], with_trial: bool = True) -> CheckoutResult:
        """Start a checkout, or report that the account is already subscribed."""
        account = self._require(account)

        decision = await self.resolver.resolve(account)
        if is_already_subscribed(decision):
            self.logger.info("Account already subscribed, checkout skipped", status=decision.status.value)
            self._record("create_subscription", "already_subscribed")
            return CheckoutResult(url=None, already_subscribed=True)

        try:
            customer_id = await self.oracle.find_customer(account.email)
            if customer_id is None:
                customer_id = await self.oracle.create_customer(account.email, account.account_id)
                self.logger.info("Billing customer created", customer_id=customer_id)

            session = await self.oracle.create_checkout_session(customer_id, account.account_id, with_trial)
        except OracleUnavailable as e:
            self._record("create_subscription", "failed")
            raise LifecycleOperationFailed("create_subscription", e.message, e.details) from e

        if not session.url:
            self._record("create_subscription", "failed")
            raise LifecycleOperationFailed(
                "create_subscription", "Checkout session has no redirect URL",
                {"session_id": session.id}
            )

        self.logger.info("Checkout session created", session_id=session.id, with_trial=with_trial)
        self._record("create_subscription", "success")
        return CheckoutResult(url=session.url)

    async def cancel_subscription(self, account: Optional[Account]) -> bool:
        """Cancel the account's subscription; True only when cancellation took effect."""
        return await self.cancel_and_resolve(account) is not None

    @trace_function("lifecycle.cancel_subscription")
    async def cancel_and_resolve(self, account: Optional[Account]) -> Optional[EntitlementDecision]:
        """Cancel, then return the re-resolved decision; None when nothing was canceled."""
        account = self._require(account)

        record = await self._load(account.account_id, "cancel_subscription")
        if record is None or record.status not in GRANTING_STATUSES:
            self.logger.info(
                "No cancellable subscription",
                status=record.status.value if record else None
            )
            self._record("cancel_subscription", "not_cancellable")
            return None

        now = self.clock()
        immediate = record.status == SubscriptionStatus.TRIALING or not self.cancel_at_period_end

        if record.billing_subscription_id is None:
            # Manual and admin-granted subscriptions exist only locally
            immediate = True
            corrected = dataclasses.replace(record, status=SubscriptionStatus.CANCELED, cancel_at=now)
            await self._save(corrected, "cancel_subscription")
        else:
            try:
                subscription = await self.oracle.cancel_subscription(
                    record.billing_subscription_id, at_period_end=not immediate
                )
            except OracleUnavailable as e:
                self.logger.error(
                    "Billing provider cancellation failed",
                    subscription_id=record.billing_subscription_id,
                    error=e.message
                )
                self._record("cancel_subscription", "failed")
                return None

            if immediate:
                corrected = dataclasses.replace(record, status=SubscriptionStatus.CANCELED, cancel_at=now)
            else:
                period_end = subscription.current_period_end or record.current_period_end
                corrected = dataclasses.replace(
                    record,
                    current_period_end=period_end,
                    cancel_at=subscription.cancel_at or period_end,
                    trial_end_date=None,
                )

            # The provider has canceled; a store outage must not undo that locally
            if not await self.resolver.record_correction(record, corrected):
                self.logger.warning(
                    "Cancellation not stored, applied in-process until the store accepts it",
                    subscription_id=record.billing_subscription_id
                )

        self.logger.info(
            "Subscription canceled",
            immediate=immediate,
            cancel_at=corrected.cancel_at.isoformat() if corrected.cancel_at else None
        )
        self._record("cancel_subscription", "success")

        return await self.resolver.resolve(account)

    @trace_function("lifecycle.complete_checkout")
    async def complete_checkout(self, account: Optional[Account], session_id: str) -> EntitlementDecision:
        """Record the subscription a finished checkout produced, then re-resolve."""
        account = self._require(account)

        try:
            session = await self.oracle.get_checkout_session(session_id)
            if session is None:
                raise LifecycleOperationFailed(
                    "complete_checkout", "Unknown checkout session", {"session_id": session_id}
                )
            if session.client_reference_id and session.client_reference_id != account.account_id:
                raise AuthorizationError(
                    "Checkout session belongs to another account", {"session_id": session_id}
                )
            if not session.subscription_id:
                raise LifecycleOperationFailed(
                    "complete_checkout", "Checkout session has not produced a subscription",
                    {"session_id": session_id, "status": session.status}
                )

            subscription = await self.oracle.get_subscription(session.subscription_id)
        except OracleUnavailable as e:
            self._record("complete_checkout", "failed")
            raise LifecycleOperationFailed("complete_checkout", e.message, e.details) from e

        if subscription is None:
            self._record("complete_checkout", "failed")
            raise LifecycleOperationFailed(
                "complete_checkout", "Subscription not found",
                {"subscription_id": session.subscription_id}
            )

        status = subscription_status(subscription, self.clock())
        existing = await self._load(account.account_id, "complete_checkout")
        base = existing or SubscriptionRecord(account_id=account.account_id, status=status)
        record = apply_subscription(base, subscription, status, customer_id=session.customer_id)
        await self._save(record, "complete_checkout")
        self.logger.info("Checkout completed", subscription_id=subscription.id, status=status.value)
        self._record("complete_checkout", "success")

        return await self.resolver.resolve(account)

    @trace_function("lifecycle.apply_billing_event")
    async def apply_billing_event(self, event_type: str, payload: Dict[str, Any]) -> Optional[SubscriptionRecord]:
        """Upsert the subscription record a provider event describes.

        ``payload`` is the event's object: a subscription, or for ``invoice.paid``
        the invoice, whose subscription is fetched from the provider. Returns None
        when the event changes nothing here: an unhandled type, an object without
        an account, an administrative override, or a subscription superseded by
        the one already recorded.
        """
        add_span_attributes(event_type=event_type)

        if event_type in SUBSCRIPTION_EVENTS:
            subscription = self._map_event(event_type, payload, map_subscription)
        elif event_type == INVOICE_PAID:
            subscription_id = self._map_event(event_type, payload, map_invoice_subscription_id)
            if subscription_id is None:
                self._record("billing_event", "ignored")
                return None
            try:
                subscription = await self.oracle.get_subscription(subscription_id)
            except OracleUnavailable as e:
                self._record("billing_event", "failed")
                raise LifecycleOperationFailed("billing_event", e.message, e.details) from e
            if subscription is None:
                self.logger.warning("Invoiced subscription not found", subscription_id=subscription_id)
                self._record("billing_event", "ignored")
                return None
        else:
            self.logger.info("Unhandled billing event", event_type=event_type)
            self._record("billing_event", "ignored")
            return None

        if not subscription.account_id:
            self.logger.warning(
                "Billing event without account", event_type=event_type, subscription_id=subscription.id
            )
            self._record("billing_event", "unmatched")
            return None
        account_id = subscription.account_id
        set_account_context(account_id=account_id)

        now = self.clock()
        if event_type == "customer.subscription.deleted":
            status = SubscriptionStatus.CANCELED
        else:
            status = subscription_status(subscription, now)

        existing = await self._load(account_id, "billing_event")
        if existing is not None and existing.admin_override:
            self.logger.info("Administrative override in place, billing event not applied", event_type=event_type)
            self._record("billing_event", "ignored")
            return None
        if (existing is not None
                and existing.billing_subscription_id not in (None, subscription.id)
                and existing.status in GRANTING_STATUSES
                and status not in GRANTING_STATUSES):
            self.logger.info(
                "Billing event for a superseded subscription",
                event_type=event_type,
                subscription_id=subscription.id,
                current_subscription_id=existing.billing_subscription_id
            )
            self._record("billing_event", "ignored")
            return None

        base = existing or SubscriptionRecord(account_id=account_id, status=status)
        record = apply_subscription(base, subscription, status)
        if status == SubscriptionStatus.CANCELED and record.cancel_at is None:
            canceled_before = existing is not None and existing.status == SubscriptionStatus.CANCELED
            record = dataclasses.replace(
                record, cancel_at=existing.cancel_at if canceled_before and existing.cancel_at else now
            )

        if record.same_state(existing):
            self._record("billing_event", "unchanged")
            return existing

        saved = await self._save(record, "billing_event")
        self.logger.info(
            "Billing event applied",
            event_type=event_type,
            subscription_id=subscription.id,
            status=status.value,
            previous_status=existing.status.value if existing else None
        )
        self._record("billing_event", "success")
        return saved

    async def set_admin_override(self,
                                 account_id: str,
                                 status: SubscriptionStatus,
                                 admin_id: str,
                                 trial_end_date: Optional[datetime] = None,
                                 notes: Optional[str] = None,
                                 admin_override: bool = True) -> SubscriptionRecord:
        """Set an account's status by administrative fiat."""
        now = self.clock()
        existing = await self._load(account_id, "set_admin_override")

        if existing is None:
            base = SubscriptionRecord(
                account_id=account_id,
                status=status,
                current_period_end=trial_end_date or now + ADMIN_DEFAULT_PERIOD,
            )
        else:
            base = existing

        if status == SubscriptionStatus.TRIALING:
            trial_end = trial_end_date or base.trial_end_date
        else:
            trial_end = None

        record = dataclasses.replace(
            base,
            status=status,
            trial_end_date=trial_end,
            admin_override=admin_override,
            override_notes=notes,
            override_by=admin_id,
            override_at=now,
        )
        saved = await self._save(record, "set_admin_override")

        self.logger.info(
            "Administrative override set",
            account_id=account_id,
            status=status.value,
            admin_override=admin_override,
            previous_status=existing.status.value if existing else None,
            override_by=admin_id
        )
        self._record("set_admin_override", "success")
        return saved

    async def get_record(self, account_id: str) -> Optional[SubscriptionRecord]:
        return await self._load(account_id, "get_record")

    async def list_records(self, status: SubscriptionStatus) -> List[SubscriptionRecord]:
        try:
            return await asyncio.wait_for(self.records.list_records_by_status(status), timeout=self.store_timeout)
        except Exception as e:
            raise LifecycleOperationFailed("list_records", str(e) or type(e).__name__) from e

    async def get_default_trial_days(self) -> int:
        try:
            return await asyncio.wait_for(
                self.records.get_default_trial_days(self.default_trial_days),
                timeout=self.store_timeout
            )
        except Exception as e:
            raise LifecycleOperationFailed("get_trial_policy", str(e) or type(e).__name__) from e

    async def set_default_trial_days(self, days: int, admin_id: str) -> int:
        if days < 0:
            raise ValidationError("defaultTrialDays must be non-negative", {"default_trial_days": days})
        try:
            stored = await asyncio.wait_for(self.records.set_default_trial_days(days), timeout=self.store_timeout)
        except Exception as e:
            raise LifecycleOperationFailed("set_trial_policy", str(e) or type(e).__name__) from e

        self.logger.info("Trial policy changed", default_trial_days=stored, changed_by=admin_id)
        self._record("set_trial_policy", "success")
        return stored

    def _map_event(self, event_type: str, payload: Dict[str, Any], mapper: Callable[[Dict[str, Any]], Any]):
        try:
            return mapper(payload)
        except MAPPING_ERRORS as e:
            self._record("billing_event", "malformed")
            raise ValidationError(
                "Malformed billing event",
                {"event_type": event_type, "error": str(e) or type(e).__name__}
            ) from e

    def _require(self, account: Optional[Account]) -> Account:
        if account is None:
            raise IdentityMissing()
        set_account_context(account_id=account.account_id)
        return account

    async def _load(self, account_id: str, operation: str) -> Optional[SubscriptionRecord]:
        pending = self.resolver.pending_record(account_id)
        if pending is not None:
            return pending
        try:
            return await asyncio.wait_for(
                self.records.get_subscription_record(account_id), timeout=self.store_timeout
            )
        except Exception as e:
            self._record(operation, "failed")
            raise LifecycleOperationFailed(
                operation, "Subscription record unavailable", {"error": str(e) or type(e).__name__}
            ) from e

    async def _save(self, record: SubscriptionRecord, operation: str) -> SubscriptionRecord:
        write = asyncio.ensure_future(self.records.upsert_subscription_record(record))
        try:
            saved = await asyncio.wait_for(asyncio.shield(write), timeout=self.store_timeout)
        except Exception as e:
            self._record(operation, "failed")
            raise LifecycleOperationFailed(
                operation, "Subscription record not saved", {"error": str(e) or type(e).__name__}
            ) from e
        finally:
            if not write.done():
                write.add_done_callback(report_abandoned_write(self.logger, record.account_id))

        # The stored record now supersedes any correction still waiting to land
        self.resolver.discard_pending(record.account_id)
        return saved

    def _record(self, operation: str, outcome: str):
        if self.metrics:
            self.metrics.increment_counter("lifecycle_operations_total", operation=operation, outcome=outcome)
