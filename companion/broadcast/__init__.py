from .scheduler import BroadcastScheduler, render_template

__all__ = ["BroadcastScheduler", "render_template"]
