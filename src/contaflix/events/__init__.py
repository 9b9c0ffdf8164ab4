"""Realtime events for the monitoring dashboard."""

from contaflix.events.publisher import EventPublisher, get_publisher
from contaflix.events.types import ContaflixEvent, EventType

__all__ = ["ContaflixEvent", "EventPublisher", "EventType", "get_publisher"]
