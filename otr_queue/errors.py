"""
Exception classes for the queue publishing core.
Callers translate these into retries, alerts or user-facing messages.
"""

from __future__ import annotations


class QueueError(Exception):
    """Base exception for queue publishing errors."""


class ConfigurationError(QueueError, ValueError):
    """Raised when a component is constructed with invalid arguments."""


class TransportError(QueueError):
    """Raised when the broker connection, channel or queue declaration fails."""

    def __init__(self, queue: str, error: str):
        self.queue = queue
        super().__init__(f"Transport failure for queue '{queue}': {error}")


class DeliveryRejected(QueueError):
    """Raised when the broker does not confirm a published message."""

    def __init__(self, queue: str, correlation_id: str, reason: str = "nack"):
        self.queue = queue
        self.correlation_id = correlation_id
        self.reason = reason
        super().__init__(
            f"Broker rejected message {correlation_id} on queue '{queue}' ({reason})"
        )


class PayloadConflictError(QueueError, ValueError):
    """Raised when a payload reuses a message metadata field name."""

    def __init__(self, fields: list[str]):
        self.fields = fields
        super().__init__(f"Payload fields collide with message metadata: {', '.join(fields)}")
