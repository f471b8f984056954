"""
Test helpers, factories and in-memory doubles for Entitlements Service tests.
"""

import copy
import dataclasses
from datetime import datetime, timedelta, timezone
from typing import Dict, Any, Optional, List

import jwt

from service_entitlements.app.resolver.models import (
    Account, BillingSubscription, CheckoutSession, SubscriptionRecord, SubscriptionStatus
)
from shared.errors import OracleUnavailable

# Fixed reference instant for deterministic tests
NOW = datetime(2026, 3, 4, 12, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


def make_account(account_id: str = "acct-1",
                 email: str = "pat@example.com",
                 age_days: float = 10,
                 now: datetime = NOW) -> Account:
    """Account created ``age_days`` before ``now``."""
    return Account(account_id=account_id, email=email, created_at=now - timedelta(days=age_days))


def make_record(account_id: str = "acct-1",
                status: SubscriptionStatus = SubscriptionStatus.ACTIVE,
                **overrides) -> SubscriptionRecord:
    return SubscriptionRecord(account_id=account_id, status=status, **overrides)


def make_subscription(subscription_id: str = "sub_1",
                      customer_id: str = "cus_1",
                      period_end: Optional[datetime] = None,
                      created: Optional[datetime] = None,
                      status: str = "active",
                      **overrides) -> BillingSubscription:
    return BillingSubscription(
        id=subscription_id,
        status=status,
        current_period_end=period_end or NOW + timedelta(days=20),
        customer_id=customer_id,
        created=created or NOW - timedelta(days=10),
        **overrides
    )


def make_subscription_payload(subscription_id: str = "sub_1",
                              customer_id: str = "cus_1",
                              status: str = "active",
                              period_end: Optional[datetime] = None,
                              account_id: Optional[str] = "acct-1",
                              **fields) -> Dict[str, Any]:
    """Raw provider subscription object as it appears in an event."""
    payload = {
        "id": subscription_id,
        "object": "subscription",
        "status": status,
        "customer": customer_id,
        "current_period_end": int((period_end or NOW + timedelta(days=20)).timestamp()),
        "created": int((NOW - timedelta(days=10)).timestamp()),
        "cancel_at": None,
        "trial_end": None,
        "metadata": {"account_id": account_id} if account_id else {},
    }
    payload.update(fields)
    return payload


class InMemorySubscriptionStore:
    """Subscription cache and trial policy kept in a dict."""

    def __init__(self, default_trial_days: Optional[int] = None):
        self.records: Dict[str, SubscriptionRecord] = {}
        self.trial_days = default_trial_days
        self.writes: List[SubscriptionRecord] = []
        self.reads = 0
        self.fail_reads = False
        self.fail_writes = False

    def seed(self, record: SubscriptionRecord):
        self.records[record.account_id] = copy.deepcopy(record)

    async def get_subscription_record(self, account_id: str) -> Optional[SubscriptionRecord]:
        self.reads += 1
        if self.fail_reads:
            raise ConnectionError("store unreachable")
        record = self.records.get(account_id)
        return copy.deepcopy(record) if record else None

    async def upsert_subscription_record(self, record: SubscriptionRecord) -> SubscriptionRecord:
        if self.fail_writes:
            raise ConnectionError("store unreachable")
        self.writes.append(copy.deepcopy(record))
        self.records[record.account_id] = copy.deepcopy(record)
        return copy.deepcopy(record)

    async def list_records_by_status(self, status: SubscriptionStatus) -> List[SubscriptionRecord]:
        return [copy.deepcopy(r) for r in self.records.values() if r.status == status]

    async def get_default_trial_days(self, default: int) -> int:
        return default if self.trial_days is None else self.trial_days

    async def set_default_trial_days(self, days: int) -> int:
        self.trial_days = days
        return days

    async def health_check(self) -> bool:
        return True

    async def start(self):
        pass

    async def stop(self):
        pass


class FakeBillingOracle:
    """Billing provider double keyed by customer email."""

    def __init__(self):
        self.customers: Dict[str, str] = {}
        self.subscriptions: Dict[str, List[BillingSubscription]] = {}
        self.checkout_sessions: Dict[str, CheckoutSession] = {}
        self.calls: List[str] = []
        self.unavailable = False
        self.cancel_calls: List[Dict[str, Any]] = []

    def add_customer(self, email: str, customer_id: str = "cus_1",
                     subscriptions: Optional[List[BillingSubscription]] = None):
        self.customers[email] = customer_id
        self.subscriptions[customer_id] = list(subscriptions or [])

    def _call(self, name: str):
        self.calls.append(name)
        if self.unavailable:
            raise OracleUnavailable(message="provider down", details={"operation": name})

    async def find_customer(self, email: str) -> Optional[str]:
        self._call("find_customer")
        return self.customers.get(email)

    async def create_customer(self, email: str, account_id: str) -> str:
        self._call("create_customer")
        customer_id = f"cus_{account_id}"
        self.add_customer(email, customer_id)
        return customer_id

    async def list_active_subscriptions(self, customer_id: str) -> List[BillingSubscription]:
        self._call("list_active_subscriptions")
        return [s for s in self.subscriptions.get(customer_id, []) if s.status == "active"]

    async def get_subscription(self, subscription_id: str) -> Optional[BillingSubscription]:
        self._call("get_subscription")
        for subscriptions in self.subscriptions.values():
            for subscription in subscriptions:
                if subscription.id == subscription_id:
                    return subscription
        return None

    async def cancel_subscription(self, subscription_id: str, at_period_end: bool = True) -> BillingSubscription:
        self._call("cancel_subscription")
        self.cancel_calls.append({"subscription_id": subscription_id, "at_period_end": at_period_end})
        for customer_id, subscriptions in self.subscriptions.items():
            for index, subscription in enumerate(subscriptions):
                if subscription.id == subscription_id:
                    if at_period_end:
                        updated = dataclasses.replace(subscription, cancel_at=subscription.current_period_end)
                    else:
                        updated = dataclasses.replace(subscription, status="canceled")
                    subscriptions[index] = updated
                    return updated
        raise OracleUnavailable(message="No such subscription", details={"subscription_id": subscription_id})

    async def create_checkout_session(self, customer_id: str, account_id: str, with_trial: bool) -> CheckoutSession:
        self._call("create_checkout_session")
        session = CheckoutSession(
            id=f"cs_{len(self.checkout_sessions) + 1}",
            url=f"https://billing.example.com/pay/cs_{len(self.checkout_sessions) + 1}",
            customer_id=customer_id,
            client_reference_id=account_id,
            status="open",
        )
        self.checkout_sessions[session.id] = session
        return session

    async def get_checkout_session(self, session_id: str) -> Optional[CheckoutSession]:
        self._call("get_checkout_session")
        return self.checkout_sessions.get(session_id)


class MockTokenGenerator:
    """Mints identity-provider style HS256 tokens."""

    def __init__(self, secret: str = "local-development-secret", audience: str = "authenticated"):
        self.secret = secret
        self.audience = audience

    def generate_access_token(self,
                              account: Account,
                              session_id: str = "session-1",
                              roles: Optional[List[str]] = None,
                              expires_in: int = 3600) -> str:
        """Generate an access token for an account."""
        now = datetime.now(timezone.utc)
        payload = {
            "sub": account.account_id,
            "email": account.email,
            "aud": self.audience,
            "created_at": account.created_at.isoformat(),
            "session_id": session_id,
            "iat": int(now.timestamp()),
            "exp": int((now + timedelta(seconds=expires_in)).timestamp()),
            "role": "authenticated",
            "roles": roles or [],
        }
        return jwt.encode(payload, self.secret, algorithm="HS256")

    def auth_headers(self, account: Account, **kwargs) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.generate_access_token(account, **kwargs)}"}
