"""
Unit tests for subscription lifecycle operations.
"""

import pytest
from datetime import timedelta

from service_entitlements.app.lifecycle.operations import (
    ADMIN_DEFAULT_PERIOD, LifecycleOperations, is_already_subscribed
)
from service_entitlements.app.resolver.engine import EntitlementResolver
from service_entitlements.app.resolver.models import (
    CheckoutSession, DecisionSource, EntitlementDecision, SubscriptionStatus, SubscriptionSummary
)
from service_entitlements.tests.helpers import (
    NOW, FakeBillingOracle, FixedClock, InMemorySubscriptionStore,
    make_account, make_record, make_subscription, make_subscription_payload
)
from shared.errors import (
    AuthorizationError, IdentityMissing, LifecycleOperationFailed, ValidationError
)


class TestLifecycleOperations:
    """Test cases for LifecycleOperations."""

    @pytest.fixture
    def clock(self):
        return FixedClock()

    @pytest.fixture
    def store(self):
        return InMemorySubscriptionStore()

    @pytest.fixture
    def oracle(self):
        return FakeBillingOracle()

    @pytest.fixture
    def resolver(self, store, oracle, clock):
        return EntitlementResolver(records=store, oracle=oracle, default_trial_days=14, clock=clock)

    @pytest.fixture
    def lifecycle(self, resolver, store, oracle, clock):
        """Create lifecycle operations that cancel at period end."""
        return LifecycleOperations(
            resolver=resolver,
            records=store,
            oracle=oracle,
            cancel_at_period_end=True,
            default_trial_days=14,
            clock=clock
        )

    @pytest.fixture
    def account(self):
        return make_account()

    @pytest.fixture
    def active_account(self, store, oracle, account):
        """Account with a paid subscription both locally and at the provider."""
        subscription = make_subscription(period_end=NOW + timedelta(days=20))
        oracle.add_customer(account.email, "cus_1", [subscription])
        store.seed(make_record(
            status=SubscriptionStatus.ACTIVE,
            billing_subscription_id="sub_1",
            billing_customer_id="cus_1",
            current_period_end=subscription.current_period_end
        ))
        return account

    @pytest.mark.asyncio
    async def test_create_subscription_when_already_active(self, lifecycle, oracle, active_account):
        """An active account is told so and no checkout is started."""
        result = await lifecycle.create_subscription(active_account)

        assert result.url is None
        assert result.already_subscribed is True
        assert "create_checkout_session" not in oracle.calls

    @pytest.mark.asyncio
    async def test_create_subscription_creates_customer(self, lifecycle, oracle, account):
        """A new customer is created before the checkout session."""
        result = await lifecycle.create_subscription(account, with_trial=False)

        assert result.already_subscribed is False
        assert result.url == "https://billing.example.com/pay/cs_1"
        assert oracle.customers[account.email] == "cus_acct-1"
        assert oracle.calls.index("create_customer") < oracle.calls.index("create_checkout_session")

    @pytest.mark.asyncio
    async def test_create_subscription_reuses_customer(self, lifecycle, oracle, account):
        """An existing customer is found by email."""
        oracle.add_customer(account.email, "cus_existing")

        await lifecycle.create_subscription(account)

        assert "create_customer" not in oracle.calls
        assert oracle.checkout_sessions["cs_1"].customer_id == "cus_existing"

    @pytest.mark.asyncio
    async def test_create_subscription_provider_down(self, lifecycle, oracle, account):
        """Provider failure surfaces as a failed operation."""
        oracle.unavailable = True

        with pytest.raises(LifecycleOperationFailed) as exc_info:
            await lifecycle.create_subscription(account)

        assert exc_info.value.status_code == 502
        assert exc_info.value.operation == "create_subscription"
        assert "create_checkout_session" not in oracle.calls

    @pytest.mark.asyncio
    async def test_create_subscription_requires_identity(self, lifecycle):
        with pytest.raises(IdentityMissing):
            await lifecycle.create_subscription(None)

    @pytest.mark.asyncio
    async def test_cancel_trial_is_immediate(self, lifecycle, resolver, store, oracle, account):
        """Canceling a provider-backed trial ends access at once."""
        oracle.add_customer(account.email, "cus_1", [
            make_subscription(status="trialing", period_end=NOW + timedelta(days=10))
        ])
        store.seed(make_record(
            status=SubscriptionStatus.TRIALING,
            billing_subscription_id="sub_1",
            trial_end_date=NOW + timedelta(days=10),
            current_period_end=NOW + timedelta(days=10)
        ))

        success = await lifecycle.cancel_subscription(account)

        assert success is True
        assert oracle.cancel_calls == [{"subscription_id": "sub_1", "at_period_end": False}]
        assert store.records["acct-1"].status == SubscriptionStatus.CANCELED
        decision = await resolver.resolve(account)
        assert decision.has_access is False

    @pytest.mark.asyncio
    async def test_cancel_trial_when_store_refuses_write(self, lifecycle, resolver, store, oracle, account):
        """A provider-side cancellation ends access even if the record cannot be saved."""
        oracle.add_customer(account.email, "cus_1", [
            make_subscription(status="trialing", period_end=NOW + timedelta(days=10))
        ])
        store.seed(make_record(
            status=SubscriptionStatus.TRIALING,
            billing_subscription_id="sub_1",
            trial_end_date=NOW + timedelta(days=10)
        ))
        store.fail_writes = True

        assert await lifecycle.cancel_subscription(account) is True

        assert oracle.cancel_calls == [{"subscription_id": "sub_1", "at_period_end": False}]
        assert store.records["acct-1"].status == SubscriptionStatus.TRIALING
        decision = await resolver.resolve(account)
        assert decision.has_access is False
        assert decision.status == SubscriptionStatus.CANCELED

        # A second cancel sees the canceled state and does not call the provider again
        assert await lifecycle.cancel_subscription(account) is False
        assert len(oracle.cancel_calls) == 1

        store.fail_writes = False
        await resolver.resolve(account)
        assert store.records["acct-1"].status == SubscriptionStatus.CANCELED
        assert resolver.pending_record("acct-1") is None

    @pytest.mark.asyncio
    async def test_local_cancel_store_failure_surfaces(self, lifecycle, store, account):
        """Without a provider subscription nothing has happened yet, so the failure is reported."""
        store.seed(make_record(status=SubscriptionStatus.TRIALING, trial_end_date=NOW + timedelta(days=5)))
        store.fail_writes = True

        with pytest.raises(LifecycleOperationFailed):
            await lifecycle.cancel_subscription(account)

    @pytest.mark.asyncio
    async def test_saved_record_supersedes_pending_correction(self, lifecycle, resolver, store, oracle, account):
        """A later successful write replaces a correction still waiting to land."""
        store.seed(make_record(status=SubscriptionStatus.TRIALING, trial_end_date=NOW - timedelta(days=1)))
        store.fail_writes = True
        await resolver.resolve(account)
        assert resolver.pending_record("acct-1").status == SubscriptionStatus.INACTIVE

        store.fail_writes = False
        await lifecycle.set_admin_override("acct-1", SubscriptionStatus.ACTIVE, admin_id="admin-1")

        assert resolver.pending_record("acct-1") is None
        assert (await resolver.resolve(account)).has_access is True

    @pytest.mark.asyncio
    async def test_cancel_local_trial(self, lifecycle, resolver, store, oracle, account):
        """A trial with no provider subscription is canceled locally."""
        store.seed(make_record(
            status=SubscriptionStatus.TRIALING,
            trial_end_date=NOW + timedelta(days=5)
        ))

        success = await lifecycle.cancel_subscription(account)

        assert success is True
        assert oracle.cancel_calls == []
        assert store.records["acct-1"].status == SubscriptionStatus.CANCELED
        assert (await resolver.resolve(account)).has_access is False

    @pytest.mark.asyncio
    async def test_cancel_active_keeps_access_until_period_end(self, lifecycle, resolver, store,
                                                               oracle, clock, active_account):
        """Paid subscriptions are scheduled to cancel at the period end."""
        period_end = NOW + timedelta(days=20)

        success = await lifecycle.cancel_subscription(active_account)

        assert success is True
        assert oracle.cancel_calls == [{"subscription_id": "sub_1", "at_period_end": True}]
        record = store.records["acct-1"]
        assert record.status == SubscriptionStatus.ACTIVE
        assert record.cancel_at == period_end

        decision = await resolver.resolve(active_account)
        assert decision.has_access is True
        assert decision.subscription.cancel_at == period_end

        clock.advance(days=21)
        decision = await resolver.resolve(active_account)
        assert decision.has_access is False
        assert store.records["acct-1"].status == SubscriptionStatus.CANCELED

    @pytest.mark.asyncio
    async def test_cancel_immediately_when_configured(self, resolver, store, oracle, clock, active_account):
        lifecycle = LifecycleOperations(
            resolver=resolver, records=store, oracle=oracle, cancel_at_period_end=False, clock=clock
        )

        assert await lifecycle.cancel_subscription(active_account) is True

        assert oracle.cancel_calls[0]["at_period_end"] is False
        assert store.records["acct-1"].status == SubscriptionStatus.CANCELED
        assert store.records["acct-1"].cancel_at == NOW

    @pytest.mark.asyncio
    async def test_cancel_provider_failure_changes_nothing(self, lifecycle, store, oracle, active_account):
        """A failed provider cancellation reports false and leaves the record alone."""
        oracle.unavailable = True

        success = await lifecycle.cancel_subscription(active_account)

        assert success is False
        assert store.writes == []
        assert store.records["acct-1"].cancel_at is None

    @pytest.mark.asyncio
    async def test_cancel_without_record(self, lifecycle, oracle, account):
        """Nothing to cancel is a plain false."""
        assert await lifecycle.cancel_subscription(account) is False
        assert oracle.calls == []

    @pytest.mark.asyncio
    async def test_cancel_already_canceled(self, lifecycle, store, account):
        store.seed(make_record(status=SubscriptionStatus.CANCELED))

        assert await lifecycle.cancel_subscription(account) is False

    @pytest.mark.asyncio
    async def test_complete_checkout_records_subscription(self, lifecycle, store, oracle, account):
        """A completed checkout is written through and resolved."""
        trial_end = NOW + timedelta(days=30)
        subscription = make_subscription(
            "sub_new", "cus_1", period_end=trial_end, status="trialing", trial_end=trial_end
        )
        oracle.add_customer(account.email, "cus_1", [subscription])
        oracle.checkout_sessions["cs_done"] = CheckoutSession(
            id="cs_done", customer_id="cus_1", subscription_id="sub_new",
            client_reference_id=account.account_id, status="complete"
        )

        decision = await lifecycle.complete_checkout(account, "cs_done")

        record = store.records["acct-1"]
        assert record.status == SubscriptionStatus.TRIALING
        assert record.billing_subscription_id == "sub_new"
        assert record.trial_end_date == trial_end
        assert decision.has_access is True
        assert decision.is_in_trial_period is True
        assert decision.trial_days_left == 30

    @pytest.mark.asyncio
    async def test_complete_checkout_for_other_account(self, lifecycle, oracle, account):
        """A session started by another account is refused."""
        oracle.checkout_sessions["cs_other"] = CheckoutSession(
            id="cs_other", subscription_id="sub_x", client_reference_id="acct-2"
        )

        with pytest.raises(AuthorizationError):
            await lifecycle.complete_checkout(account, "cs_other")

    @pytest.mark.asyncio
    async def test_complete_checkout_unknown_session(self, lifecycle, account):
        with pytest.raises(LifecycleOperationFailed):
            await lifecycle.complete_checkout(account, "cs_missing")

    @pytest.mark.asyncio
    async def test_complete_checkout_unpaid_session(self, lifecycle, oracle, account):
        """An open session without a subscription cannot be completed."""
        oracle.checkout_sessions["cs_open"] = CheckoutSession(
            id="cs_open", client_reference_id=account.account_id, status="open"
        )

        with pytest.raises(LifecycleOperationFailed) as exc_info:
            await lifecycle.complete_checkout(account, "cs_open")

        assert exc_info.value.details["status"] == "open"

    @pytest.mark.asyncio
    async def test_admin_override_creates_record(self, lifecycle, resolver, store, oracle):
        """An override on an unknown account creates a year-long record."""
        record = await lifecycle.set_admin_override("acct-9", SubscriptionStatus.ACTIVE, admin_id="admin-1",
                                                    notes="conference speaker")

        assert record.admin_override is True
        assert record.override_by == "admin-1"
        assert record.override_at == NOW
        assert record.override_notes == "conference speaker"
        assert record.current_period_end == NOW + ADMIN_DEFAULT_PERIOD
        assert record.billing_subscription_id is None

        decision = await resolver.resolve(make_account("acct-9", "sam@example.com", age_days=400))
        assert decision.has_access is True
        assert decision.source == DecisionSource.OVERRIDE
        assert oracle.calls == []

    @pytest.mark.asyncio
    async def test_admin_override_trial(self, lifecycle, store):
        """Trial overrides keep their trial end date."""
        trial_end = NOW + timedelta(days=7)

        record = await lifecycle.set_admin_override(
            "acct-1", SubscriptionStatus.TRIALING, admin_id="admin-1", trial_end_date=trial_end
        )

        assert record.trial_end_date == trial_end
        assert record.current_period_end == trial_end

    @pytest.mark.asyncio
    async def test_admin_override_clears_trial_for_other_status(self, lifecycle, store):
        store.seed(make_record(status=SubscriptionStatus.TRIALING, trial_end_date=NOW + timedelta(days=3)))

        record = await lifecycle.set_admin_override("acct-1", SubscriptionStatus.CANCELED, admin_id="admin-1")

        assert record.status == SubscriptionStatus.CANCELED
        assert record.trial_end_date is None

    @pytest.mark.asyncio
    async def test_trial_policy_round_trip(self, lifecycle, resolver, account):
        """Policy changes apply to the next resolution."""
        assert await lifecycle.get_default_trial_days() == 14

        assert await lifecycle.set_default_trial_days(5, admin_id="admin-1") == 5

        assert await lifecycle.get_default_trial_days() == 5
        assert (await resolver.resolve(account)).has_access is False

    @pytest.mark.asyncio
    async def test_trial_policy_rejects_negative(self, lifecycle):
        with pytest.raises(ValidationError):
            await lifecycle.set_default_trial_days(-1, admin_id="admin-1")

    @pytest.mark.asyncio
    async def test_list_records_by_status(self, lifecycle, store):
        store.seed(make_record("acct-1", SubscriptionStatus.ACTIVE))
        store.seed(make_record("acct-2", SubscriptionStatus.CANCELED))

        records = await lifecycle.list_records(SubscriptionStatus.CANCELED)

        assert [r.account_id for r in records] == ["acct-2"]

    @pytest.mark.asyncio
    async def test_store_failure_surfaces(self, lifecycle, store, account):
        """Lifecycle callers see storage failures instead of a silent false."""
        store.fail_reads = True

        with pytest.raises(LifecycleOperationFailed):
            await lifecycle.cancel_subscription(account)


    @pytest.mark.asyncio
    async def test_subscription_event_ends_trial(self, lifecycle, resolver, store, account):
        """A trial converted to a paid subscription loses its trial end."""
        store.seed(make_record(
            status=SubscriptionStatus.TRIALING,
            billing_subscription_id="sub_1",
            trial_end_date=NOW + timedelta(days=5)
        ))

        record = await lifecycle.apply_billing_event(
            "customer.subscription.updated", make_subscription_payload(status="active")
        )

        assert record.status == SubscriptionStatus.ACTIVE
        assert record.trial_end_date is None
        assert record.billing_customer_id == "cus_1"
        assert record.current_period_end == NOW + timedelta(days=20)
        decision = await resolver.resolve(account)
        assert decision.has_access is True
        assert decision.is_in_trial_period is False

    @pytest.mark.asyncio
    async def test_trialing_event_keeps_trial_end(self, lifecycle, store):
        trial_end = NOW + timedelta(days=30)
        payload = make_subscription_payload(
            status="trialing", period_end=trial_end, trial_end=int(trial_end.timestamp())
        )

        record = await lifecycle.apply_billing_event("customer.subscription.created", payload)

        assert record.status == SubscriptionStatus.TRIALING
        assert record.trial_end_date == trial_end
        assert store.records["acct-1"].billing_subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_lapsed_active_event_is_inactive(self, lifecycle):
        payload = make_subscription_payload(period_end=NOW - timedelta(days=1))

        record = await lifecycle.apply_billing_event("customer.subscription.updated", payload)

        assert record.status == SubscriptionStatus.INACTIVE

    @pytest.mark.asyncio
    async def test_deleted_event_cancels(self, lifecycle, resolver, store, account):
        store.seed(make_record(
            status=SubscriptionStatus.ACTIVE,
            billing_subscription_id="sub_1",
            current_period_end=NOW + timedelta(days=20)
        ))

        record = await lifecycle.apply_billing_event(
            "customer.subscription.deleted", make_subscription_payload(status="canceled")
        )

        assert record.status == SubscriptionStatus.CANCELED
        assert record.cancel_at == NOW
        assert (await resolver.resolve(account)).has_access is False

    @pytest.mark.asyncio
    async def test_invoice_paid_fetches_subscription(self, lifecycle, store, oracle):
        oracle.add_customer("pat@example.com", "cus_1", [make_subscription(account_id="acct-1")])

        record = await lifecycle.apply_billing_event(
            "invoice.paid", {"id": "in_1", "object": "invoice", "subscription": "sub_1"}
        )

        assert "get_subscription" in oracle.calls
        assert record.status == SubscriptionStatus.ACTIVE
        assert store.records["acct-1"].billing_subscription_id == "sub_1"

    @pytest.mark.asyncio
    async def test_invoice_paid_provider_down(self, lifecycle, store, oracle):
        oracle.unavailable = True

        with pytest.raises(LifecycleOperationFailed):
            await lifecycle.apply_billing_event("invoice.paid", {"id": "in_1", "subscription": "sub_1"})
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_invoice_without_subscription_is_ignored(self, lifecycle, store, oracle):
        assert await lifecycle.apply_billing_event("invoice.paid", {"id": "in_1"}) is None
        assert oracle.calls == []
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_event_without_account_is_ignored(self, lifecycle, store):
        payload = make_subscription_payload(account_id=None)

        assert await lifecycle.apply_billing_event("customer.subscription.updated", payload) is None
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_unhandled_event_type(self, lifecycle, store):
        assert await lifecycle.apply_billing_event("charge.refunded", {"id": "ch_1"}) is None
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_malformed_event_is_rejected(self, lifecycle, store):
        """An event object without an id, or with a bad timestamp, changes nothing."""
        without_id = make_subscription_payload()
        del without_id["id"]

        with pytest.raises(ValidationError):
            await lifecycle.apply_billing_event("customer.subscription.updated", without_id)
        with pytest.raises(ValidationError):
            await lifecycle.apply_billing_event(
                "customer.subscription.updated", make_subscription_payload(current_period_end="soon")
            )
        with pytest.raises(ValidationError):
            await lifecycle.apply_billing_event("customer.subscription.updated", None)
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_redelivered_event_writes_once(self, lifecycle, store):
        payload = make_subscription_payload()

        first = await lifecycle.apply_billing_event("customer.subscription.updated", payload)
        second = await lifecycle.apply_billing_event("customer.subscription.updated", payload)

        assert first.same_state(second)
        assert len(store.writes) == 1

    @pytest.mark.asyncio
    async def test_redelivered_deletion_keeps_cancel_time(self, lifecycle, store, clock):
        payload = make_subscription_payload(status="canceled")
        await lifecycle.apply_billing_event("customer.subscription.deleted", payload)
        clock.advance(hours=1)

        record = await lifecycle.apply_billing_event("customer.subscription.deleted", payload)

        assert record.cancel_at == NOW
        assert len(store.writes) == 1

    @pytest.mark.asyncio
    async def test_event_for_superseded_subscription_is_ignored(self, lifecycle, store):
        """Deleting an old subscription does not cancel its replacement."""
        store.seed(make_record(
            status=SubscriptionStatus.ACTIVE,
            billing_subscription_id="sub_2",
            current_period_end=NOW + timedelta(days=20)
        ))

        result = await lifecycle.apply_billing_event(
            "customer.subscription.deleted", make_subscription_payload("sub_1", status="canceled")
        )

        assert result is None
        assert store.records["acct-1"].status == SubscriptionStatus.ACTIVE
        assert store.writes == []

    @pytest.mark.asyncio
    async def test_event_leaves_admin_override(self, lifecycle, store):
        store.seed(make_record(status=SubscriptionStatus.ACTIVE, admin_override=True, override_by="admin-1"))

        result = await lifecycle.apply_billing_event(
            "customer.subscription.deleted", make_subscription_payload(status="canceled")
        )

        assert result is None
        assert store.records["acct-1"].status == SubscriptionStatus.ACTIVE


class TestIsAlreadySubscribed:
    """Test cases for the already-subscribed predicate."""

    def test_active_access(self):
        decision = EntitlementDecision(has_access=True, status=SubscriptionStatus.ACTIVE)
        assert is_already_subscribed(decision) is True

    def test_fallback_trial_is_not_a_subscription(self):
        decision = EntitlementDecision(has_access=True, is_in_trial_period=True,
                                       source=DecisionSource.TRIAL_FALLBACK)
        assert is_already_subscribed(decision) is False

    def test_provider_trial_is_a_subscription(self):
        decision = EntitlementDecision(
            has_access=True,
            status=SubscriptionStatus.TRIALING,
            subscription=SubscriptionSummary(id="sub_1", status=SubscriptionStatus.TRIALING)
        )
        assert is_already_subscribed(decision) is True

    def test_local_trial_is_not_a_subscription(self):
        decision = EntitlementDecision(
            has_access=True,
            status=SubscriptionStatus.TRIALING,
            subscription=SubscriptionSummary(id=None, status=SubscriptionStatus.TRIALING)
        )
        assert is_already_subscribed(decision) is False
