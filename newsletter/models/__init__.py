"""SQLAlchemy models for the idempotency store and the delivery outbox."""
