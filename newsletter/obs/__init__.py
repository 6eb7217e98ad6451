"""Observability: structured logging, metrics, tracing and error reporting."""
