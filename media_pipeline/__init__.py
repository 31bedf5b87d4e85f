"""Staged media enrichment pipeline.

Modules include configuration, the stage queues and workers, the transaction
ledger, result delivery and recovery, the circuit breaker, the dedup cache,
RabbitMQ helpers, ORM models, metrics and tracing.
"""
