from .eventsub_client import EventSubClient
from .stream_status import StreamStatusMonitor

__all__ = ["EventSubClient", "StreamStatusMonitor"]
