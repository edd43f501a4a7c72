from .bus import EventBus, Subscription
from .log import EventLog

__all__ = ["EventBus", "Subscription", "EventLog"]
