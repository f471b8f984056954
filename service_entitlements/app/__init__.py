"""
Entitlements Service package for Crewbook.

This package decides whether an account currently has paid access,
reconciling the cached subscription record, the billing provider and the
trial policy. It provides:

- app.main: API surface for decisions, lifecycle operations and admin.
- app.resolver: Data model and the server-authoritative resolver.
- app.persistence: PostgreSQL subscription cache and trial policy.
- app.billing: Billing provider client.
- app.cache: Redis-backed session decision store.
- app.facade: Per-session client facade with single-flight resolution.
- app.lifecycle: Create, cancel and checkout completion.

Guidelines:
- Resolution never fails; it degrades to the most conservative decision.
- Lifecycle operations report definite outcomes.
"""
