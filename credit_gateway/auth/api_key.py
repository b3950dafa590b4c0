"""API key authentication and validation."""
import hashlib
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy import select, update

from credit_gateway.billing.database import Database
from credit_gateway.billing.models import Account, ApiKey, utcnow
from credit_gateway.errors import (
    AuthenticationError,
    ExpiredKey,
    InactiveKey,
    MalformedCredential,
    UnknownKey,
)
from credit_gateway.utils.logging import get_logger
from credit_gateway.utils.tasks import TaskTracker

logger = get_logger(__name__)

# sk_live_ followed by 64 lowercase hex characters
KEY_PREFIX = "sk_live_"
KEY_LENGTH = len(KEY_PREFIX) + 64
KEY_PATTERN = re.compile(r"^sk_live_[0-9a-f]{64}$")

# Characters kept in clear for display in the dashboard
DISPLAY_PREFIX_LENGTH = 12


@dataclass(frozen=True)
class AuthenticatedKey:
    """Identity resolved from a valid credential."""

    account_id: uuid.UUID
    api_key_id: uuid.UUID
    email: str


def generate_api_key() -> str:
    """Generate a new random secret in the credential format."""
    return f"{KEY_PREFIX}{secrets.token_hex(32)}"


def hash_api_key(api_key: str) -> str:
    """Deterministic SHA-256 digest used for lookup."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def key_prefix(api_key: str) -> str:
    """Display prefix, e.g. "sk_live_abc1"."""
    return api_key[:DISPLAY_PREFIX_LENGTH]


def is_well_formed(credential: Optional[str]) -> bool:
    if not credential or len(credential) != KEY_LENGTH:
        return False
    return KEY_PATTERN.match(credential) is not None


class KeyAuthenticator:
    """Resolves a bearer credential to its account and key."""

    def __init__(
        self,
        db: Database,
        tracker: TaskTracker,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.tracker = tracker
        self.clock = clock

    async def authenticate(self, credential: Optional[str]) -> AuthenticatedKey:
        """
        Validate a credential and return the owning account.

        Args:
            credential: Raw secret from the Authorization header

        Returns:
            AuthenticatedKey for the matching active key

        Raises:
            MalformedCredential: Wrong prefix, length or alphabet (no lookup made)
            UnknownKey: No key with this digest, or its account is gone
            InactiveKey: Key deactivated
            ExpiredKey: Key past its expiry
        """
        try:
            return await self._authenticate(credential)
        except AuthenticationError as e:
            logger.info("Authentication failed", extra={"reason": e.reason})
            raise

    async def _authenticate(self, credential: Optional[str]) -> AuthenticatedKey:
        if not is_well_formed(credential):
            raise MalformedCredential()

        key_hash = hash_api_key(credential)
        async with self.db.session() as session:
            row = (
                await session.execute(
                    select(ApiKey, Account.email)
                    .outerjoin(Account, Account.id == ApiKey.account_id)
                    .where(ApiKey.key_hash == key_hash)
                )
            ).first()

        if row is None:
            raise UnknownKey()
        api_key, email = row
        if not api_key.is_active:
            raise InactiveKey()
        if api_key.expires_at is not None and api_key.expires_at < self.clock():
            raise ExpiredKey()
        if email is None:
            raise UnknownKey()

        self.tracker.spawn(self._touch(api_key.id), name=f"touch-key:{api_key.id}")
        return AuthenticatedKey(account_id=api_key.account_id, api_key_id=api_key.id, email=email)

    async def _touch(self, api_key_id: uuid.UUID) -> None:
        """Stamp last_used_at; failures are logged and otherwise ignored."""
        try:
            async with self.db.session() as session:
                await session.execute(
                    update(ApiKey)
                    .where(ApiKey.id == api_key_id)
                    .values(last_used_at=self.clock())
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
        except Exception as e:
            logger.warning(
                f"Failed to update last_used_at: {e}",
                extra={"api_key_id": str(api_key_id)},
            )
