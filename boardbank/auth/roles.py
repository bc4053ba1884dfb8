"""Role definitions."""
from enum import Enum


class Role(str, Enum):
    """Player roles within a session."""
    PLAYER = "player"
    HOST = "host"

    @classmethod
    def for_player(cls, is_host: bool) -> "Role":
        return cls.HOST if is_host else cls.PLAYER
