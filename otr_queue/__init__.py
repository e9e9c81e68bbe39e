"""Queue publishing core for the o!TR data-worker.

Modules include configuration, message metadata, the RabbitMQ publisher,
the publisher registry, the fixed-window rate limiter, metrics and
tracing helpers.
"""
