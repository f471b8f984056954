"""
Billing provider package.

The client maps raw provider payloads into BillingSubscription and
CheckoutSession at the boundary and reports every failure as
OracleUnavailable.
"""
