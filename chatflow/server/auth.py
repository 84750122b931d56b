import asyncio, datetime
from typing import Optional

import bcrypt
import jwt

from ..config import Config
from .errors import Unauthenticated
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.auth')


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=10)).decode("utf-8")


def check_password(password: str, password_hash: Optional[str]) -> bool:
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        logger.warning("Stored password hash is malformed")
        return False


async def hash_password_async(password: str) -> str:
    """Run hash_password on the default executor, off the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, hash_password, password)


async def check_password_async(password: str, password_hash: Optional[str]) -> bool:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, check_password, password, password_hash)


def bearer_token(header: Optional[str]) -> Optional[str]:
    """Extract the token from an 'authorization: Bearer <token>' value."""
    if not header:
        return None
    parts = header.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


class TokenService:
    """Issues and verifies signed bearer tokens.

    Tokens carry the user id in a 'userId' claim and expire after
    JWT_EXPIRY_DAYS.
    """

    def __init__(self, secret: str = None, expiry_days: int = None, algorithm: str = None):
        self.secret = secret or Config.JWT_SECRET
        self.expiry = datetime.timedelta(days=expiry_days or Config.JWT_EXPIRY_DAYS)
        self.algorithm = algorithm or Config.JWT_ALGORITHM

    def issue(self, user_id: str) -> str:
        now = datetime.datetime.now(datetime.timezone.utc)
        claims = {"userId": user_id, "iat": now, "exp": now + self.expiry}
        return jwt.encode(claims, self.secret, algorithm=self.algorithm)

    def verify(self, token: Optional[str]) -> str:
        """Return the user id carried by a token.

        Raises:
            Unauthenticated: Missing, malformed, badly signed or expired token
        """
        if not token:
            raise Unauthenticated("Authentication error: No token provided")
        try:
            claims = jwt.decode(token, self.secret, algorithms=[self.algorithm])
        except jwt.ExpiredSignatureError as e:
            raise Unauthenticated("Authentication error: Token has expired") from e
        except jwt.InvalidTokenError as e:
            raise Unauthenticated("Authentication error: Invalid or expired token") from e
        user_id = claims.get("userId")
        if not user_id:
            raise Unauthenticated("Authentication error: Invalid token")
        return user_id
