"""Player token handling.

A token is issued when a player creates or joins a session and identifies
that player on later requests. Whoever holds it can act as the player.
"""
import jwt
from datetime import datetime, timedelta, timezone
from typing import Optional
from dataclasses import dataclass

from boardbank.config import config
from boardbank.auth.roles import Role


@dataclass
class TokenPayload:
    """Decoded token payload."""
    player_id: str
    session_id: str
    name: str
    role: Role
    exp: datetime
    iat: datetime


class TokenError(Exception):
    """Token validation error."""
    pass


def create_player_token(player_id: str, session_id: str, name: str, role: Role) -> str:
    """Create a token for a player of a session.
    
    Args:
        player_id: Player identifier.
        session_id: Session the player belongs to.
        name: Player's display name.
        role: Player's role (host/player).
        
    Returns:
        Encoded JWT.
    """
    now = datetime.now(timezone.utc)
    payload = {
        "sub": player_id,
        "sid": session_id,
        "name": name,
        "role": role.value,
        "iat": now,
        "exp": now + timedelta(hours=config.token_expiry_hours),
    }
    return jwt.encode(payload, config.jwt_secret, algorithm=config.jwt_algorithm)


def verify_token(token: str, session_id: Optional[str] = None) -> TokenPayload:
    """Verify and decode a player token.
    
    Args:
        token: The JWT to verify.
        session_id: If provided, verify the token belongs to this session.
        
    Returns:
        Decoded token payload.
        
    Raises:
        TokenError: If the token is invalid, expired or for another session.
    """
    try:
        payload = jwt.decode(
            token,
            config.jwt_secret,
            algorithms=[config.jwt_algorithm]
        )
    except jwt.ExpiredSignatureError:
        raise TokenError("Token has expired")
    except jwt.InvalidTokenError as e:
        raise TokenError(f"Invalid token: {e}")
    
    try:
        decoded = TokenPayload(
            player_id=payload["sub"],
            session_id=payload["sid"],
            name=payload["name"],
            role=Role(payload["role"]),
            exp=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
            iat=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
        )
    except (KeyError, ValueError) as e:
        raise TokenError(f"Invalid token: {e}")
    
    if session_id and decoded.session_id != session_id:
        raise TokenError("Token belongs to another session")
    
    return decoded
