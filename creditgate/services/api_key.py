"""
API Key Service - Generation, verification and lifecycle of customer API keys.

Keys look like ``rsk_<32 url-safe chars>``. Only an Argon2id hash of the full
key is stored, next to a short ``lookup_prefix`` (literal prefix plus the first
8 body characters) that narrows verification to the few keys sharing it.

NO DICTIONARIES - All data uses typed models/dataclasses.
"""

import asyncio
import base64
import re
import secrets
import time
from datetime import datetime, timedelta
from uuid import UUID

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError
from sqlalchemy import case, func, select
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from creditgate.config import settings
from creditgate.db.models import Account, APIKey, APIRequestLog, utc_now
from creditgate.exceptions import (
    InvalidCredentialError,
    KeyExpiredError,
    MalformedCredentialError,
    MissingCredentialError,
    ResourceNotFoundError,
)
from creditgate.models.domain import (
    APIKeyData,
    GeneratedAPIKey,
    KeyUsageSummary,
    VerifiedKey,
)
from creditgate.observability.metrics import metrics
from creditgate.services.accounts import account_to_domain
from creditgate.services.usage_recorder import UsageRecorder

logger = get_logger(__name__)


class KeyFormat:
    """Structural format of API keys: ``{prefix}_{body}``."""

    def __init__(
        self,
        prefix: str | None = None,
        body_length: int | None = None,
        lookup_length: int | None = None,
    ) -> None:
        self.prefix = prefix or settings.api_key_prefix
        self.body_length = body_length or settings.api_key_body_length
        self.lookup_length = lookup_length or settings.api_key_lookup_length
        self._pattern = re.compile(
            rf"^{re.escape(self.prefix)}_[A-Za-z0-9_-]{{{self.body_length}}}$"
        )

    def matches(self, presented: str) -> bool:
        return bool(self._pattern.match(presented))

    def lookup_prefix(self, key: str) -> str:
        """Literal prefix, separator and the first lookup_length body characters."""
        return key[: len(self.prefix) + 1 + self.lookup_length]

    def generate(self) -> str:
        """New random key. The body carries 6 bits of entropy per character."""
        random_bytes = secrets.token_bytes(self.body_length)
        body = base64.urlsafe_b64encode(random_bytes).decode("ascii").rstrip("=")
        return f"{self.prefix}_{body[: self.body_length]}"


def key_to_domain(key: APIKey) -> APIKeyData:
    """Convert ORM key to domain model. The hash never leaves this layer."""
    return APIKeyData(
        key_id=key.id,
        account_id=key.account_id,
        name=key.name,
        lookup_prefix=key.lookup_prefix,
        is_active=key.is_active,
        created_at=key.created_at,
        expires_at=key.expires_at,
        last_used_at=key.last_used_at,
        total_requests=key.total_requests,
    )


_dummy_hash: str | None = None


def _get_dummy_hash(hasher: PasswordHasher) -> str:
    """Fixed hash compared against when no candidate shares the prefix."""
    global _dummy_hash
    if _dummy_hash is None:
        _dummy_hash = hasher.hash(secrets.token_urlsafe(32))
    return _dummy_hash


class KeyVerifier:
    """
    Authenticates a presented API key.

    Verification reads the primary database so a revoked key is rejected on
    the very next request. Nothing about valid keys is cached.
    """

    def __init__(
        self,
        session: AsyncSession,
        recorder: UsageRecorder | None = None,
        key_format: KeyFormat | None = None,
        password_hasher: PasswordHasher | None = None,
    ) -> None:
        self.session = session
        self.recorder = recorder
        self.key_format = key_format or KeyFormat()
        self.password_hasher = password_hasher or PasswordHasher()

    async def verify(self, presented: str | None, now: datetime | None = None) -> VerifiedKey:
        """
        Verify a presented API key.

        Raises:
            MissingCredentialError: nothing presented
            MalformedCredentialError: wrong structure (no database access)
            InvalidCredentialError: unknown or revoked key
            KeyExpiredError: genuine key past its expiry
        """
        start = time.perf_counter()

        if not presented:
            metrics.record_key_verification("missing", 0, time.perf_counter() - start)
            raise MissingCredentialError()

        if not self.key_format.matches(presented):
            logger.warning("api_key_malformed", presented_length=len(presented))
            metrics.record_key_verification("malformed", 0, time.perf_counter() - start)
            raise MalformedCredentialError()

        lookup_prefix = self.key_format.lookup_prefix(presented)
        candidates = await self._find_candidates(lookup_prefix)

        match: tuple[APIKey, Account] | None = None
        if candidates:
            for key, account in candidates:
                if await self._verify_hash(key.secret_hash, presented):
                    match = (key, account)
                    break
        else:
            dummy = await asyncio.to_thread(_get_dummy_hash, self.password_hasher)
            await self._verify_hash(dummy, presented)

        if match is None:
            logger.warning(
                "api_key_rejected",
                lookup_prefix=lookup_prefix,
                candidates=len(candidates),
            )
            metrics.record_key_verification(
                "invalid", len(candidates), time.perf_counter() - start
            )
            raise InvalidCredentialError()

        key, account = match
        now = now or utc_now()

        if key.expires_at is not None and key.expires_at <= now:
            logger.warning(
                "api_key_expired",
                key_id=str(key.id),
                expired_at=key.expires_at.isoformat(),
            )
            metrics.record_key_verification(
                "expired", len(candidates), time.perf_counter() - start
            )
            raise KeyExpiredError(key.id)

        if self.recorder is not None:
            self.recorder.touch_key(key.id, now)

        has_credit = account.credit_balance > 0
        metrics.record_key_verification("valid", len(candidates), time.perf_counter() - start)
        logger.debug(
            "api_key_verified",
            key_id=str(key.id),
            account_id=str(account.id),
            has_credit=has_credit,
        )

        return VerifiedKey(
            account=account_to_domain(account),
            key=key_to_domain(key),
            has_credit=has_credit,
        )

    async def _find_candidates(self, lookup_prefix: str) -> list[tuple[APIKey, Account]]:
        """
        Active keys sharing the lookup prefix, with their accounts.

        Expired keys are included so that a genuine but expired key is reported
        as expired rather than unknown.
        """
        stmt = (
            select(APIKey, Account)
            .join(Account, Account.id == APIKey.account_id)
            .where(APIKey.lookup_prefix == lookup_prefix, APIKey.is_active.is_(True))
        )
        result = await self.session.execute(stmt)
        return [(row[0], row[1]) for row in result.all()]

    async def _verify_hash(self, secret_hash: str, presented: str) -> bool:
        return await asyncio.to_thread(self._check_hash, secret_hash, presented)

    def _check_hash(self, secret_hash: str, presented: str) -> bool:
        try:
            return self.password_hasher.verify(secret_hash, presented)
        except (VerifyMismatchError, InvalidHashError, VerificationError):
            return False


class APIKeyService:
    """Owner-scoped API key lifecycle. Keys of other accounts behave as missing."""

    def __init__(
        self,
        db: AsyncSession,
        key_format: KeyFormat | None = None,
        password_hasher: PasswordHasher | None = None,
    ) -> None:
        self.db = db
        self.key_format = key_format or KeyFormat()
        self.password_hasher = password_hasher or PasswordHasher()

    def generate_api_key(self) -> tuple[str, str, str]:
        """
        Generate a new API key.

        Returns:
            tuple: (plaintext_key, secret_hash, lookup_prefix)
        """
        plaintext_key = self.key_format.generate()
        secret_hash = self.password_hasher.hash(plaintext_key)
        return plaintext_key, secret_hash, self.key_format.lookup_prefix(plaintext_key)

    async def create_api_key(
        self,
        account_id: UUID,
        name: str,
        expires_in_days: int | None = None,
    ) -> GeneratedAPIKey:
        """
        Create a new API key for an account.

        Returns:
            GeneratedAPIKey with plaintext key (shown once!)
        """
        plaintext_key, secret_hash, lookup_prefix = await asyncio.to_thread(
            self.generate_api_key
        )

        expires_at = None
        if expires_in_days is not None:
            expires_at = utc_now() + timedelta(days=expires_in_days)

        api_key = APIKey(
            account_id=account_id,
            secret_hash=secret_hash,
            lookup_prefix=lookup_prefix,
            name=name,
            is_active=True,
            expires_at=expires_at,
            total_requests=0,
            created_at=utc_now(),
        )

        self.db.add(api_key)
        await self.db.commit()
        await self.db.refresh(api_key)

        logger.info(
            "api_key_created",
            key_id=str(api_key.id),
            account_id=str(account_id),
            lookup_prefix=lookup_prefix,
            expires_at=expires_at.isoformat() if expires_at else None,
        )

        return GeneratedAPIKey(
            key_id=api_key.id,
            account_id=account_id,
            plaintext_key=plaintext_key,
            lookup_prefix=lookup_prefix,
            name=name,
            created_at=api_key.created_at,
            expires_at=expires_at,
        )

    async def list_api_keys(self, account_id: UUID) -> list[APIKeyData]:
        """All keys of an account, newest first, including revoked ones."""
        stmt = (
            select(APIKey)
            .where(APIKey.account_id == account_id)
            .order_by(APIKey.created_at.desc())
        )
        result = await self.db.execute(stmt)
        return [key_to_domain(key) for key in result.scalars().all()]

    async def get_api_key(self, account_id: UUID, key_id: UUID) -> APIKeyData:
        return key_to_domain(await self._get_owned_key(account_id, key_id))

    async def rename_api_key(self, account_id: UUID, key_id: UUID, name: str) -> APIKeyData:
        api_key = await self._get_owned_key(account_id, key_id)
        api_key.name = name
        await self.db.commit()
        logger.info("api_key_renamed", key_id=str(key_id), account_id=str(account_id))
        return key_to_domain(api_key)

    async def revoke_api_key(self, account_id: UUID, key_id: UUID) -> APIKeyData:
        """Deactivate a key. Takes effect on the next request."""
        api_key = await self._get_owned_key(account_id, key_id)
        api_key.is_active = False
        await self.db.commit()
        logger.info("api_key_revoked", key_id=str(key_id), account_id=str(account_id))
        return key_to_domain(api_key)

    async def reactivate_api_key(self, account_id: UUID, key_id: UUID) -> APIKeyData:
        """Re-enable a revoked key. Its expiry, if any, still applies."""
        api_key = await self._get_owned_key(account_id, key_id)
        api_key.is_active = True
        await self.db.commit()
        logger.info("api_key_reactivated", key_id=str(key_id), account_id=str(account_id))
        return key_to_domain(api_key)

    async def delete_api_key(self, account_id: UUID, key_id: UUID) -> None:
        """Delete a key. Its request log rows are kept with api_key_id cleared."""
        api_key = await self._get_owned_key(account_id, key_id)
        await self.db.delete(api_key)
        await self.db.commit()
        logger.info("api_key_deleted", key_id=str(key_id), account_id=str(account_id))

    async def get_key_stats(
        self, account_id: UUID, key_id: UUID, period_days: int = 30
    ) -> KeyUsageSummary:
        """Request totals for a key over the last period_days."""
        api_key = await self._get_owned_key(account_id, key_id)
        since = utc_now() - timedelta(days=period_days)

        stmt = select(
            func.count(APIRequestLog.id),
            func.coalesce(func.sum(case((APIRequestLog.outcome == "success", 1), else_=0)), 0),
            func.coalesce(func.sum(APIRequestLog.credits_charged), 0),
        ).where(APIRequestLog.api_key_id == key_id, APIRequestLog.created_at >= since)
        total, successful, credits = (await self.db.execute(stmt)).one()

        return KeyUsageSummary(
            key_id=api_key.id,
            period_days=period_days,
            total_requests=int(total),
            successful_requests=int(successful),
            failed_requests=int(total) - int(successful),
            credits_charged=int(credits),
            last_used_at=api_key.last_used_at,
        )

    async def _get_owned_key(self, account_id: UUID, key_id: UUID) -> APIKey:
        stmt = select(APIKey).where(APIKey.id == key_id, APIKey.account_id == account_id)
        result = await self.db.execute(stmt)
        api_key = result.scalar_one_or_none()
        if api_key is None:
            raise ResourceNotFoundError("API key", key_id)
        return api_key
