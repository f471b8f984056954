"""Subscription lifecycle operations package."""
