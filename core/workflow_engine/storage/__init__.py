"""Checkpoint storage backends."""
