"""
Entitlements service for Crewbook.
"""

from typing import Dict, List, Optional

from fastapi import HTTPException, Query, Request

from shared.base_service import BaseService
from shared.circuit_breaker import get_circuit_breaker
from shared.retry import RetryConfig, RetryError

from .billing.client import BillingOracleClient
from .cache.redis_cache import RedisDecisionCache
from .facade.client import EntitlementClientFacade, build_view
from .identity import IdentityVerifier, verify_webhook_secret
from .lifecycle.operations import LifecycleOperations
from .persistence.postgres import PostgreSQLPersistence
from .resolver.engine import EntitlementResolver
from .resolver.models import (
    AdminOverrideRequest, BillingEventRequest, BillingEventResponse, CancelResponse,
    CheckoutRequest, CheckoutResponse,
    CompleteCheckoutRequest, DecisionSource, EntitlementDecision,
    EntitlementDecisionResponse, EntitlementViewResponse, SubscriptionRecordResponse,
    SubscriptionStatus, TrialPolicyModel
)


class EntitlementsService(BaseService):
    """Entitlements service implementation."""

    def __init__(self,
                 persistence=None,
                 oracle=None,
                 decision_cache: Optional[RedisDecisionCache] = None,
                 enable_decision_cache: bool = True,
                 clock=None):
        super().__init__("entitlements", 8011)

        self.persistence = persistence or PostgreSQLPersistence(self.config.postgres_dsn)
        self.oracle = oracle or BillingOracleClient(
            api_url=self.config.billing_api_url,
            api_key=self.config.billing_api_key,
            price_id=self.config.billing_price_id,
            success_url=self.config.checkout_success_url,
            cancel_url=self.config.checkout_cancel_url,
            checkout_trial_days=self.config.checkout_trial_days,
            timeout=self.config.billing_timeout_seconds,
            retry_config=RetryConfig(
                max_attempts=self.config.billing_retry_attempts,
                base_delay=self.config.billing_retry_base_delay,
                max_delay=5.0
            ),
            circuit_breaker=get_circuit_breaker(
                "billing_provider",
                failure_threshold=self.config.billing_failure_threshold,
                recovery_timeout=self.config.billing_recovery_timeout,
                expected_exception=RetryError
            ),
            metrics=self.metrics
        )
        if decision_cache is None and enable_decision_cache:
            decision_cache = RedisDecisionCache(self.config.redis_url, self.config.session_ttl_seconds)
        self.decision_cache = decision_cache

        self.identity = IdentityVerifier(
            secret=self.config.jwt_secret,
            audience=self.config.jwt_audience,
            algorithm=self.config.jwt_algorithm
        )
        self.resolver = EntitlementResolver(
            records=self.persistence,
            oracle=self.oracle,
            default_trial_days=self.config.default_trial_days,
            oracle_timeout=self.config.billing_timeout_seconds,
            cache_timeout=self.config.cache_timeout_seconds,
            metrics=self.metrics,
            clock=clock
        )
        self.lifecycle = LifecycleOperations(
            resolver=self.resolver,
            records=self.persistence,
            oracle=self.oracle,
            cancel_at_period_end=self.config.cancel_at_period_end,
            default_trial_days=self.config.default_trial_days,
            store_timeout=self.config.cache_timeout_seconds,
            metrics=self.metrics,
            clock=clock
        )
        self.facade = EntitlementClientFacade(
            resolver=self.resolver,
            lifecycle=self.lifecycle,
            decision_cache=self.decision_cache,
            session_idle_seconds=self.config.session_idle_seconds,
            max_sessions=self.config.max_sessions,
            metrics=self.metrics,
            clock=clock
        )

        self._setup_entitlements_routes()

    def _setup_entitlements_routes(self):
        """Set up entitlements-specific routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "entitlements",
                "message": "Crewbook - Entitlements Service",
                "version": "1.0.0",
                "capabilities": ["resolution", "lifecycle", "billing_events", "admin_override", "trial_policy"]
            }

        @self.app.get("/entitlements/me", response_model=EntitlementViewResponse)
        async def get_my_entitlements(
            request: Request,
            recheck: bool = Query(False, description="Force a fresh resolution")
        ):
            """Decision surface for the signed-in session."""
            identity = await self.identity.authenticate_optional(request)
            if identity is None:
                view = build_view(
                    EntitlementDecision.no_access(DecisionSource.IDENTITY_MISSING),
                    self.facade.clock(),
                    "session"
                )
                return EntitlementViewResponse.from_view(view)

            self.facade.on_account_changed(identity.session_id, identity.account)
            view = await self.facade.get_view(identity.session_id, recheck=recheck)
            return EntitlementViewResponse.from_view(view)

        @self.app.post("/entitlements/resolve", response_model=EntitlementDecisionResponse)
        async def resolve_entitlements(request: Request):
            """Server-authoritative resolution, bypassing the session guard."""
            identity = await self.identity.authenticate_optional(request)
            decision = await self.resolver.resolve(identity.account if identity else None)
            return EntitlementDecisionResponse.from_decision(decision)

        @self.app.delete("/entitlements/session")
        async def end_session(request: Request):
            """Forget the session's decision (logout)."""
            identity = await self.identity.authenticate_optional(request)
            if identity is not None:
                await self.facade.logout(identity.session_id)
            return {"success": True}

        @self.app.post("/subscriptions/checkout", response_model=CheckoutResponse)
        async def create_checkout(request: Request, body: CheckoutRequest):
            """Start a subscription checkout."""
            identity = await self.identity.authenticate(request)
            self.facade.on_account_changed(identity.session_id, identity.account)
            result = await self.facade.create_subscription(identity.session_id, with_trial=body.with_trial)
            return CheckoutResponse(url=result.url, already_subscribed=result.already_subscribed)

        @self.app.post("/subscriptions/checkout/complete", response_model=EntitlementViewResponse)
        async def complete_checkout(request: Request, body: CompleteCheckoutRequest):
            """Record the subscription produced by a finished checkout."""
            identity = await self.identity.authenticate(request)
            self.facade.on_account_changed(identity.session_id, identity.account)
            view = await self.facade.complete_checkout(identity.session_id, body.session_id)
            return EntitlementViewResponse.from_view(view)

        @self.app.post("/subscriptions/cancel", response_model=CancelResponse)
        async def cancel_subscription(request: Request):
            """Cancel the signed-in account's subscription."""
            identity = await self.identity.authenticate(request)
            self.facade.on_account_changed(identity.session_id, identity.account)
            success = await self.facade.cancel_subscription(identity.session_id)
            return CancelResponse(success=success)

        @self.app.post("/billing/events", response_model=BillingEventResponse)
        async def receive_billing_event(request: Request, body: BillingEventRequest):
            """Apply a provider subscription event to the local record."""
            verify_webhook_secret(request, self.config.billing_webhook_secret)
            record = await self.facade.apply_billing_event(body.type, body.data.get("object"))
            return BillingEventResponse(
                applied=record is not None,
                account_id=record.account_id if record else None
            )

        @self.app.get("/admin/trial-policy", response_model=TrialPolicyModel)
        async def get_trial_policy(request: Request):
            """Read the trial policy."""
            await self.identity.require_admin(request)
            days = await self.lifecycle.get_default_trial_days()
            return TrialPolicyModel(default_trial_days=days)

        @self.app.put("/admin/trial-policy", response_model=TrialPolicyModel)
        async def update_trial_policy(request: Request, body: TrialPolicyModel):
            """Change the trial policy."""
            admin = await self.identity.require_admin(request)
            days = await self.lifecycle.set_default_trial_days(body.default_trial_days, admin.account.account_id)
            return TrialPolicyModel(default_trial_days=days)

        @self.app.get("/admin/subscriptions", response_model=List[SubscriptionRecordResponse])
        async def list_subscriptions(
            request: Request,
            status: SubscriptionStatus = Query(..., description="Filter by status")
        ):
            """List subscription records in a status."""
            await self.identity.require_admin(request)
            records = await self.lifecycle.list_records(status)
            return [SubscriptionRecordResponse.from_record(record) for record in records]

        @self.app.get("/admin/subscriptions/{account_id}", response_model=SubscriptionRecordResponse)
        async def get_subscription(request: Request, account_id: str):
            """Read one account's subscription record."""
            await self.identity.require_admin(request)
            record = await self.lifecycle.get_record(account_id)
            if record is None:
                raise HTTPException(status_code=404, detail="Subscription record not found")
            return SubscriptionRecordResponse.from_record(record)

        @self.app.put("/admin/subscriptions/{account_id}", response_model=SubscriptionRecordResponse)
        async def set_subscription_override(request: Request, account_id: str, body: AdminOverrideRequest):
            """Set an administrative override on an account."""
            admin = await self.identity.require_admin(request)
            record = await self.lifecycle.set_admin_override(
                account_id,
                body.status,
                admin_id=admin.account.account_id,
                trial_end_date=body.trial_end_date,
                notes=body.notes,
                admin_override=body.admin_override
            )
            await self.facade.invalidate_account(account_id)
            return SubscriptionRecordResponse.from_record(record)

    async def _check_dependencies(self) -> Dict[str, str]:
        """Check service dependencies."""
        dependencies = {
            "postgres": "ok" if await self.persistence.health_check() else "error"
        }
        circuit_breaker = getattr(self.oracle, "circuit_breaker", None)
        if circuit_breaker is not None:
            dependencies["billing_provider"] = "error" if circuit_breaker.is_open() else "ok"
        if self.decision_cache is not None:
            dependencies["redis"] = "ok" if await self.decision_cache.health_check() else "error"
        return dependencies

    async def start(self):
        """Start the service."""
        await self.persistence.start()
        if self.decision_cache is not None:
            await self.decision_cache.start()
        self.logger.info("Entitlements service started")

    async def stop(self):
        """Stop the service."""
        await self.persistence.stop()
        if self.decision_cache is not None:
            await self.decision_cache.stop()
        self.logger.info("Entitlements service stopped")


def create_app():
    """Create FastAPI application."""
    service = EntitlementsService()
    return service.app


if __name__ == "__main__":
    service = EntitlementsService()
    service.run()
