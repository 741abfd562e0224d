"""Adapters package - bridge between the engine and frontends.

Contains the typed event taxonomy and the event bus that decouples
runners from slow consumers.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "EngineEvent",
    "dict_to_event",
    "event_to_dict",
]

from localdesk.adapters.event_bus import EventBus
from localdesk.adapters.events import EngineEvent, dict_to_event, event_to_dict
