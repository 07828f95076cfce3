"""
Provider credentials and account lookups.

A user's own OpenRouter key (BYOK) is stored as a Fernet token in
user_accounts.openrouter_key_encrypted. Without BYOK the server key is used.
"""
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import async_sessionmaker

from thinkspace.config import get_settings
from thinkspace.models.user_account import UserAccount
from thinkspace.pipeline.errors import CredentialMissingError
from thinkspace.utils.logger import get_logger

logger = get_logger(__name__)


class SecretsService:
    """SecretsResolver backed by user_accounts."""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        server_key: Optional[str] = None,
        encryption_key: Optional[str] = None,
    ):
        settings = get_settings()
        self._session_factory = session_factory
        self._server_key = settings.openrouter_api_key if server_key is None else server_key
        key = settings.byok_encryption_key if encryption_key is None else encryption_key
        self._fernet = Fernet(key.encode()) if key else None

    def encrypt(self, plaintext: str) -> str:
        if self._fernet is None:
            raise CredentialMissingError("BYOK_ENCRYPTION_KEY not configured")
        return self._fernet.encrypt(plaintext.encode()).decode()

    def decrypt(self, token: str) -> str:
        if self._fernet is None:
            raise CredentialMissingError("BYOK_ENCRYPTION_KEY not configured")
        try:
            return self._fernet.decrypt(token.encode()).decode()
        except InvalidToken as exc:
            raise CredentialMissingError("Stored OpenRouter key could not be decrypted") from exc

    async def resolve_credential(self, user_id: str, used_byok: bool) -> str:
        if used_byok:
            async with self._session_factory() as db:
                encrypted = await db.scalar(
                    select(UserAccount.openrouter_key_encrypted).where(UserAccount.id == user_id)
                )
            if not encrypted:
                raise CredentialMissingError("OPENROUTER_KEY_MISSING")
            return self.decrypt(encrypted)

        if not self._server_key:
            raise CredentialMissingError("OPENROUTER_API_KEY not configured")
        return self._server_key

    async def get_account(self, user_id: str) -> Optional[UserAccount]:
        async with self._session_factory() as db:
            return await db.get(UserAccount, user_id)

    async def get_subscription_tier(self, user_id: str) -> str:
        account = await self.get_account(user_id)
        return account.subscription_tier if account is not None else "free"

    async def has_user_key(self, user_id: str) -> bool:
        account = await self.get_account(user_id)
        return bool(account is not None and account.openrouter_key_encrypted)

    async def set_user_key(self, user_id: str, api_key: str) -> None:
        encrypted = self.encrypt(api_key)
        async with self._session_factory() as db:
            account = await db.get(UserAccount, user_id)
            if account is None:
                account = UserAccount(id=user_id, subscription_tier="free")
                db.add(account)
            account.openrouter_key_encrypted = encrypted
            await db.commit()
        logger.info("byok.key_stored", extra={"user_id": user_id})

    async def delete_user_key(self, user_id: str) -> bool:
        async with self._session_factory() as db:
            account = await db.get(UserAccount, user_id)
            if account is None or not account.openrouter_key_encrypted:
                return False
            account.openrouter_key_encrypted = None
            await db.commit()
        logger.info("byok.key_deleted", extra={"user_id": user_id})
        return True
