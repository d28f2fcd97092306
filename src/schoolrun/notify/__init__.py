from .notifier import BestEffortNotifier, LoggingNotifier, Notifier
from .realtime import BestEffortChannel, NullRealtimeChannel, RealtimeChannel, RedisRealtimeChannel

__all__ = [
    "BestEffortChannel",
    "BestEffortNotifier",
    "LoggingNotifier",
    "Notifier",
    "NullRealtimeChannel",
    "RealtimeChannel",
    "RedisRealtimeChannel",
]
