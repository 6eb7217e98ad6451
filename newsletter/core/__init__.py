"""Idempotency processor, transaction handle and outbox writer."""
