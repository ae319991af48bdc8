"""Session JWT validation and password verification.

User sessions are issued by the external login service as HS256 JWTs whose
``sub`` claim is the user UUID. This service only validates them; the
mobile layer issues its own opaque tokens (see token_service).
"""

from datetime import datetime, timedelta, timezone

import bcrypt
import jwt
import structlog

from src.config import get_settings

logger = structlog.get_logger(__name__)

# Constants
JWT_ALGORITHM = "HS256"
SESSION_TOKEN_EXPIRE_MINUTES = 15


class AuthService:
    """Service for session JWTs and bcrypt password checks."""

    def __init__(self):
        self.settings = get_settings()

    def hash_password(self, password: str) -> str:
        """Hash a password using bcrypt.

        Args:
            password: Plain-text password to hash

        Returns:
            Bcrypt hash string
        """
        salt = bcrypt.gensalt()
        hashed = bcrypt.hashpw(password.encode("utf-8"), salt)
        return hashed.decode("utf-8")

    def verify_password(self, password: str, password_hash: str) -> bool:
        """Verify a password against a bcrypt hash.

        A malformed stored hash counts as a mismatch.

        Args:
            password: Plain-text password to check
            password_hash: Bcrypt hash to verify against

        Returns:
            True if the password matches, False otherwise
        """
        try:
            return bcrypt.checkpw(
                password.encode("utf-8"),
                password_hash.encode("utf-8"),
            )
        except ValueError:
            logger.warning("password_hash_malformed")
            return False

    def create_session_token(self, user_id: str, username: str) -> str:
        """Create a session JWT the way the login service does.

        Used by local tooling and tests; production sessions come from the
        login service.

        Args:
            user_id: User UUID as string (placed in 'sub' claim)
            username: Username to include in payload

        Returns:
            Encoded JWT string
        """
        now = datetime.now(timezone.utc)
        payload = {
            "sub": user_id,
            "username": username,
            "iat": now,
            "exp": now + timedelta(minutes=SESSION_TOKEN_EXPIRE_MINUTES),
        }
        return jwt.encode(payload, self.settings.jwt_secret, algorithm=JWT_ALGORITHM)

    def validate_session_token(self, token: str) -> dict:
        """Decode and validate a session JWT.

        Args:
            token: Encoded JWT string

        Returns:
            Decoded payload dict with sub, iat, exp

        Raises:
            ValueError: If the token is invalid, expired, or malformed
        """
        try:
            payload = jwt.decode(
                token,
                self.settings.jwt_secret,
                algorithms=[JWT_ALGORITHM],
            )
            return payload
        except jwt.ExpiredSignatureError:
            raise ValueError("Session token has expired")
        except jwt.InvalidTokenError as e:
            raise ValueError(f"Invalid session token: {e}")
