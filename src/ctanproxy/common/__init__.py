"""Helpers shared across the proxy modules."""
