"""Adapters package - Bridge between the agent engine and host frontends.

Holds the event bus, transcript reconstruction, file change tracking and
the approval gateway. ``AgentSession`` lives in ``agentlink.adapters.session``
and is imported from there, since it depends on the engine's process module.
"""
from __future__ import annotations

__all__ = [
    "EventBus",
    "Subscription",
]

from agentlink.adapters.event_bus import EventBus, Subscription
