"""In-process change notifications."""

from my_pocket.events.bus import ChangeEventBus, Subscription, Topic

__all__ = ["ChangeEventBus", "Subscription", "Topic"]
