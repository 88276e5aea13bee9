"""Adapters package - bridge between the orchestration core and frontends.

Holds the typed event vocabulary and the event bus that carries
presentation events out of the session registry.
"""
from __future__ import annotations

__all__ = [
    "DeckEvent",
    "EventBus",
    "dict_to_event",
    "event_to_dict",
]

from agentdeck.adapters.event_bus import EventBus
from agentdeck.adapters.events import DeckEvent, dict_to_event, event_to_dict
