from .collector import BotStatistics, StatisticsCollector, UserStatistics

__all__ = ["BotStatistics", "StatisticsCollector", "UserStatistics"]
