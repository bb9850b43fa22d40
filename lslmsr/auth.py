"""
Authentication module. Per-account API keys.

Keys are issued by an admin for a ledger account. Issuing again for the
same account rotates the key. Only the sha256 hash of the API key is
stored; the raw key is returned once.
"""

import hashlib
import secrets
from dataclasses import dataclass, field

from lslmsr.models import _now


@dataclass
class User:
    account: str
    api_key_hash: str
    created_at: str = field(default_factory=_now)
    last_seen_at: str = field(default_factory=_now)


def _hash_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode()).hexdigest()


class AuthStore:
    """In-memory auth store. Serialized via persistence module."""

    def __init__(self):
        self.users: dict[str, User] = {}         # account -> User
        self.key_to_user: dict[str, User] = {}   # api_key_hash -> User

    def issue_key(self, account: str) -> tuple[User, str]:
        """
        Create or rotate the key for an account. Returns (user, raw_api_key).
        """
        raw_key = secrets.token_urlsafe(32)
        key_hash = _hash_key(raw_key)

        existing = self.users.get(account)
        if existing:
            # Rotate: the old key stops working
            self.key_to_user.pop(existing.api_key_hash, None)
            existing.api_key_hash = key_hash
            existing.last_seen_at = _now()
            self.key_to_user[key_hash] = existing
            return existing, raw_key

        user = User(account=account, api_key_hash=key_hash)
        self.users[account] = user
        self.key_to_user[key_hash] = user
        return user, raw_key

    def add(self, user: User) -> None:
        self.users[user.account] = user
        self.key_to_user[user.api_key_hash] = user

    def authenticate(self, raw_key: str) -> User | None:
        """Validate an API key. Returns User or None."""
        key_hash = _hash_key(raw_key)
        user = self.key_to_user.get(key_hash)
        if user:
            user.last_seen_at = _now()
        return user
