"""Backfill engine: request queues, pagination and orchestration."""
