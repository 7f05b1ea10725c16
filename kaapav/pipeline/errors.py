"""
Pipeline error taxonomy.

Every failure the conversation pipeline can hit maps to one of these.
Only RoutingTimeout, RoutingFailure and GatewaySendFailure ever lead to
a user-visible fallback notice; the rest are dropped or logged.
"""

from __future__ import annotations


class PipelineError(Exception):
    """Base class for all conversation pipeline errors."""


class DuplicateEvent(PipelineError):
    """Inbound event id was already processed inside the dedup window."""

    def __init__(self, event_id: str) -> None:
        super().__init__(f"Duplicate event {event_id}")
        self.event_id = event_id


class RateLimited(PipelineError):
    """Outbound send for a conversation is not allowed yet."""

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Rate limited: {conversation_id}")
        self.conversation_id = conversation_id


class RoutingTimeout(PipelineError, TimeoutError):
    """A routing attempt ran past its deadline (the work itself may still finish)."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"Routing exceeded {timeout_ms}ms deadline")
        self.timeout_ms = timeout_ms


class RoutingFailure(PipelineError):
    """Routing raised before any reply could be produced."""


class PersistenceFailure(PipelineError):
    """A durable store read or write failed.  Never surfaces to the user."""


class GatewaySendFailure(PipelineError):
    """The messaging gateway rejected a send that the routing step depends on."""

    def __init__(self, conversation_id: str, error: str | None) -> None:
        super().__init__(f"Send to {conversation_id} failed: {error or 'unknown error'}")
        self.conversation_id = conversation_id
        self.error = error
