"""Persistence package for Entitlements Service (PostgreSQL via asyncpg)."""
