from .oauth_client import TwitchOAuthClient, build_authorize_url
from .token_broker import AuthFlowState, TokenBroker
from .token_store import KeyringTokenStore

__all__ = [
    "AuthFlowState",
    "KeyringTokenStore",
    "TokenBroker",
    "TwitchOAuthClient",
    "build_authorize_url",
]
