"""Event types and the inbound event queue."""

from parlor.bus.events import Event, PlatformMessage
from parlor.bus.queue import EventQueue

__all__ = ["Event", "PlatformMessage", "EventQueue"]
