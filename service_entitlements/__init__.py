"""Crewbook Entitlements Service."""
