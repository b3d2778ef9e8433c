from .http_server import HttpServer
from .sse import PushHub

__all__ = ["HttpServer", "PushHub"]
