"""
Cache package for Entitlements Service.

Provides a Redis-backed store for facade decisions keyed by session and
account, with TTLs that never outlive the next trial or billing boundary.
"""
