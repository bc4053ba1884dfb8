"""Player tokens and roles."""
from .roles import Role
from .jwt_handler import TokenError, TokenPayload, create_player_token, verify_token

__all__ = ["Role", "TokenError", "TokenPayload", "create_player_token", "verify_token"]
