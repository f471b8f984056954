"""
Mock billing provider exposing the customer, subscription and checkout
endpoints the Entitlements Service calls.
"""

import time
import uuid
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl

from fastapi import FastAPI, HTTPException, Query, Request

from shared.logging import get_logger

DAY_SECONDS = 86400
PERIOD_SECONDS = 30 * DAY_SECONDS


def _new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:14]}"


class MockBillingServer:
    """Mock billing provider implementation."""

    def __init__(self, port: int = 12111):
        self.port = port
        self.logger = get_logger("mock.billing")
        self.app = FastAPI(title="Mock Billing Provider", version="1.0.0")

        self.customers: Dict[str, Dict[str, Any]] = {}
        self.subscriptions: Dict[str, Dict[str, Any]] = {}
        self.checkout_sessions: Dict[str, Dict[str, Any]] = {}

        self._setup_routes()

    def _setup_routes(self):
        """Set up mock billing routes."""

        @self.app.get("/")
        async def root():
            """Root endpoint."""
            return {
                "service": "mock-billing",
                "message": "Mock billing provider for Crewbook Entitlements",
                "version": "1.0.0",
                "customers": len(self.customers),
                "subscriptions": len(self.subscriptions)
            }

        @self.app.get("/v1/customers")
        async def list_customers(request: Request, email: Optional[str] = Query(None), limit: int = Query(10)):
            """List customers, optionally filtered by email."""
            self._authorize(request)
            customers = [c for c in self.customers.values() if email is None or c["email"] == email]
            return self._list(customers[:limit])

        @self.app.post("/v1/customers")
        async def create_customer(request: Request):
            """Create a customer."""
            self._authorize(request)
            form = await self._form(request)
            customer = {
                "id": _new_id("cus"),
                "object": "customer",
                "email": form.get("email"),
                "created": int(time.time()),
                "metadata": {"account_id": form.get("metadata[account_id]")}
            }
            self.customers[customer["id"]] = customer
            self.logger.info("Mock customer created", customer_id=customer["id"])
            return customer

        @self.app.get("/v1/subscriptions")
        async def list_subscriptions(
            request: Request,
            customer: str = Query(...),
            status: Optional[str] = Query(None),
            limit: int = Query(10)
        ):
            """List a customer's subscriptions."""
            self._authorize(request)
            subscriptions = [
                s for s in self.subscriptions.values()
                if s["customer"] == customer and (status is None or s["status"] == status)
            ]
            return self._list(subscriptions[:limit])

        @self.app.get("/v1/subscriptions/{subscription_id}")
        async def get_subscription(request: Request, subscription_id: str):
            """Retrieve a subscription."""
            self._authorize(request)
            return self._get_subscription(subscription_id)

        @self.app.post("/v1/subscriptions/{subscription_id}")
        async def update_subscription(request: Request, subscription_id: str):
            """Update a subscription; supports scheduling cancellation at period end."""
            self._authorize(request)
            subscription = self._get_subscription(subscription_id)
            form = await self._form(request)
            if form.get("cancel_at_period_end") == "true":
                subscription["cancel_at_period_end"] = True
                subscription["cancel_at"] = subscription["current_period_end"]
            elif form.get("cancel_at_period_end") == "false":
                subscription["cancel_at_period_end"] = False
                subscription["cancel_at"] = None
            return subscription

        @self.app.delete("/v1/subscriptions/{subscription_id}")
        async def cancel_subscription(request: Request, subscription_id: str):
            """Cancel a subscription immediately."""
            self._authorize(request)
            subscription = self._get_subscription(subscription_id)
            now = int(time.time())
            subscription["status"] = "canceled"
            subscription["canceled_at"] = now
            subscription["ended_at"] = now
            return subscription

        @self.app.post("/v1/checkout/sessions")
        async def create_checkout_session(request: Request):
            """Create a subscription checkout session."""
            self._authorize(request)
            form = await self._form(request)
            if form.get("mode") != "subscription":
                raise HTTPException(status_code=400, detail="Only subscription mode is supported")

            session_id = _new_id("cs")
            session = {
                "id": session_id,
                "object": "checkout.session",
                "url": f"http://localhost:{self.port}/checkout/{session_id}",
                "customer": form.get("customer"),
                "client_reference_id": form.get("client_reference_id"),
                "subscription": None,
                "status": "open",
                "success_url": form.get("success_url"),
                "cancel_url": form.get("cancel_url"),
                "trial_period_days": int(form.get("subscription_data[trial_period_days]") or 0),
                "subscription_metadata": {"account_id": form.get("subscription_data[metadata][account_id]")}
            }
            self.checkout_sessions[session_id] = session
            return session

        @self.app.get("/v1/checkout/sessions/{session_id}")
        async def get_checkout_session(request: Request, session_id: str):
            """Retrieve a checkout session."""
            self._authorize(request)
            if session_id not in self.checkout_sessions:
                raise HTTPException(status_code=404, detail="No such checkout session")
            return self.checkout_sessions[session_id]

        @self.app.post("/_mock/checkout/sessions/{session_id}/complete")
        async def complete_checkout_session(session_id: str):
            """Simulate the customer paying: create the subscription."""
            if session_id not in self.checkout_sessions:
                raise HTTPException(status_code=404, detail="No such checkout session")
            session = self.checkout_sessions[session_id]
            if session["subscription"]:
                return session

            now = int(time.time())
            trial_days = session["trial_period_days"]
            trial_end = now + trial_days * DAY_SECONDS if trial_days else None
            subscription = {
                "id": _new_id("sub"),
                "object": "subscription",
                "customer": session["customer"],
                "status": "trialing" if trial_end else "active",
                "created": now,
                "current_period_end": trial_end or now + PERIOD_SECONDS,
                "trial_end": trial_end,
                "cancel_at": None,
                "cancel_at_period_end": False,
                "metadata": session["subscription_metadata"]
            }
            self.subscriptions[subscription["id"]] = subscription
            session["subscription"] = subscription["id"]
            session["status"] = "complete"
            self.logger.info("Mock checkout completed", session_id=session_id, subscription_id=subscription["id"])
            return session

    def _authorize(self, request: Request):
        authorization = request.headers.get("Authorization", "")
        if not authorization.startswith("Bearer ") or not authorization[7:].strip():
            raise HTTPException(status_code=401, detail="Invalid API key provided")

    async def _form(self, request: Request) -> Dict[str, str]:
        body = await request.body()
        return dict(parse_qsl(body.decode("utf-8")))

    def _get_subscription(self, subscription_id: str) -> Dict[str, Any]:
        if subscription_id not in self.subscriptions:
            raise HTTPException(status_code=404, detail="No such subscription")
        return self.subscriptions[subscription_id]

    def _list(self, items) -> Dict[str, Any]:
        return {"object": "list", "data": list(items), "has_more": False}


def create_app():
    """Create mock billing application."""
    server = MockBillingServer()
    return server.app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=12111)
