from .twitch_api import TwitchAPI

__all__ = ["TwitchAPI"]
