"""Run events and the pub/sub bus."""
