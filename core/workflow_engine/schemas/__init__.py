"""Persisted record types."""
