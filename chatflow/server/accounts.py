import re
import uuid
from typing import List, Optional, Tuple

from .auth import TokenService, check_password_async, hash_password_async
from .errors import Conflict, Unauthenticated, ValidationFailure
from .models import User, now_ms
from .repo import Store
from ..utils.logger import setup_logger

logger = setup_logger('chatflow.accounts')

EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[A-Za-z]{2,}$")


def _username(username: str) -> str:
    username = (username or "").strip()
    if not 3 <= len(username) <= 30:
        raise ValidationFailure("Username must be between 3 and 30 characters")
    return username


def _email(email: str) -> str:
    email = (email or "").strip().lower()
    if not EMAIL_RE.match(email):
        raise ValidationFailure("Please provide a valid email")
    return email


def _password(password: str, field: str = "Password") -> str:
    if not password or len(password) < 6:
        raise ValidationFailure(f"{field} must be at least 6 characters long")
    return password


class AccountService:
    """User accounts: registration, login and profile edits.

    Returns (token, user) pairs on register/login; the token is what a
    client presents when opening the chat stream.
    """

    def __init__(self, store: Store, tokens: TokenService):
        self.store = store
        self.tokens = tokens

    async def register(self, username: str, email: str, password: str) -> Tuple[str, User]:
        """Create a password account.

        Raises:
            ValidationFailure: Bad username, email or password
            Conflict: Email or username already in use
        """
        username, email, password = _username(username), _email(email), _password(password)
        password_hash = await hash_password_async(password)
        if self.store.find_user_by_email(email):
            logger.warning(f"Duplicate email registration attempt: {email}")
            raise Conflict("This email is already registered. Please use a different email or sign in instead.")
        if self.store.find_user_by_username(username):
            raise Conflict("Username is already taken")
        ts = now_ms()
        user = self.store.create_user(User(
            id=uuid.uuid4().hex[:24],
            username=username,
            email=email,
            password_hash=password_hash,
            last_seen=ts,
            created_at=ts,
        ))
        return self.tokens.issue(user.id), user

    async def login(self, email: str, password: str) -> Tuple[str, User]:
        email = (email or "").strip().lower()
        user = self.store.find_user_by_email(email)
        if not user or not await check_password_async(password, user.password_hash):
            logger.warning(f"Failed login for {email}")
            raise Unauthenticated("Invalid email or password")
        self.store.update_user_online_status(user.id, True)
        logger.info(f"User {user.email} logged in")
        return self.tokens.issue(user.id), user

    def login_external(self, provider_id: str, email: str, display_name: Optional[str] = None,
                       avatar: Optional[str] = None) -> Tuple[str, User]:
        """Sign in with an already verified external identity.

        Looks the user up by provider id, then links an existing account
        with the same email, and otherwise creates a new one.
        """
        if not provider_id:
            raise ValidationFailure("Provider id is required")
        email = _email(email)
        user = self.store.find_user_by_google_id(provider_id)
        if user:
            logger.info(f"Existing external user found: {user.email}")
        else:
            user = self.store.find_user_by_email(email)
            if user:
                user.google_id = provider_id
                user.avatar = avatar or user.avatar
                self.store.update_user(user)
                logger.info(f"Linked external account to existing user: {user.email}")
            else:
                ts = now_ms()
                user = self.store.create_user(User(
                    id=uuid.uuid4().hex[:24],
                    username=(display_name or email.split("@")[0])[:30],
                    email=email,
                    google_id=provider_id,
                    avatar=avatar,
                    is_google_auth=True,
                    last_seen=ts,
                    created_at=ts,
                ))
        self.store.update_user_online_status(user.id, True)
        return self.tokens.issue(user.id), user

    def authenticate(self, token: Optional[str]) -> User:
        """Resolve the user behind a bearer token.

        Raises:
            Unauthenticated: Bad token or the user no longer exists
        """
        user_id = self.tokens.verify(token)
        user = self.store.find_user_by_id(user_id)
        if not user:
            raise Unauthenticated("User not found. Please log in again.")
        return user

    def logout(self, user: User):
        self.store.update_user_online_status(user.id, False)

    def list_users(self, user: User) -> List[User]:
        others = [u for u in self.store.all_users() if u.id != user.id]
        return sorted(others, key=lambda u: u.username)

    def search_users(self, user: User, query: str, limit: int = 10) -> List[User]:
        """Case-insensitive substring match on username or email."""
        q = (query or "").strip().lower()
        if not q:
            return []
        matched = [u for u in self.list_users(user)
                   if q in u.username.lower() or q in u.email.lower()]
        return matched[:limit]

    def update_username(self, user: User, username: str) -> User:
        username = _username(username)
        existing = self.store.find_user_by_username(username)
        if existing and existing.id != user.id:
            raise Conflict("Username is already taken")
        user.username = username
        return self.store.update_user(user)

    def update_email(self, user: User, email: str) -> User:
        email = _email(email)
        existing = self.store.find_user_by_email(email)
        if existing and existing.id != user.id:
            raise Conflict("Email is already taken")
        user.email = email
        return self.store.update_user(user)

    async def change_password(self, user: User, old_password: str, new_password: str):
        if not await check_password_async(old_password, user.password_hash):
            raise Unauthenticated("Current password is incorrect")
        user.password_hash = await hash_password_async(_password(new_password, "New password"))
        self.store.update_user(user)

    async def delete_account(self, user: User, password: str):
        """Remove the user record. Messages and groups keep their references."""
        if not await check_password_async(password, user.password_hash):
            raise Unauthenticated("Incorrect password")
        self.store.delete_user(user.id)
