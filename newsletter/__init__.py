"""Newsletter publishing service with idempotent writes and an outbox-driven delivery worker."""
