"""Sync orchestration feature: token health, breaker, backoff, adaptive cadence, webhooks."""
