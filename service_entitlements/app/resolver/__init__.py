"""
Entitlement resolution package.

Modules of interest:
- models: Account, SubscriptionRecord, billing types and decisions.
- engine: The ordered reconciliation algorithm that produces a decision
  and writes corrections back to the subscription cache.
"""
