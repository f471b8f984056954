"""Tests for Entitlements Service."""
