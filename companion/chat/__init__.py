from .audience import AudienceEntry, AudienceTracker
from .commands import CommandContext, CommandProcessor, CommandResponse, DeliveryMode, register_default_commands
from .decorations import ChatDecorationsProvider
from .handler import ChatMessageHandler
from .history import ChatHistoryStore, ChatMessageRecord
from .messenger import Messenger

__all__ = [
    "AudienceEntry",
    "AudienceTracker",
    "ChatDecorationsProvider",
    "ChatHistoryStore",
    "ChatMessageHandler",
    "ChatMessageRecord",
    "CommandContext",
    "CommandProcessor",
    "CommandResponse",
    "DeliveryMode",
    "Messenger",
    "register_default_commands",
]
