"""
FastAPI Dependencies - Owner authentication and shared application services.

Account owners authenticate with a Google ID token (Authorization: Bearer).
Metered gateway calls authenticate with an API key and never pass through
here; the pipeline verifies those.

NO DICTIONARIES - All dependencies return typed objects.
"""

import time
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from google.auth.transport import requests as google_requests
from google.oauth2 import id_token
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from creditgate.config import settings
from creditgate.db.session import get_write_db
from creditgate.exceptions import ResourceNotFoundError
from creditgate.models.domain import AccountData, AccountIdentity
from creditgate.services.accounts import AccountService
from creditgate.services.extraction import ContentExtractor
from creditgate.services.payment_provider import PaymentProvider
from creditgate.services.pipeline import GatewayPipeline
from creditgate.services.usage_recorder import UsageRecorder

logger = get_logger(__name__)

# ============================================================================
# Google ID token authentication (account owners)
# ============================================================================


@dataclass
class UserIdentity:
    """Authenticated user identity from a Google ID token."""

    oauth_provider: str  # e.g., "oauth:google"
    external_id: str  # Google user ID (sub claim)
    email: str | None = None
    name: str | None = None

    def to_account_identity(self) -> AccountIdentity:
        return AccountIdentity(oauth_provider=self.oauth_provider, external_id=self.external_id)


# Bearer token scheme
bearer_scheme = HTTPBearer(auto_error=False)

# Cache for verified Google ID tokens: token -> (user_id, email, name, expiry_timestamp)
_google_token_cache: dict[str, tuple[str, str | None, str | None, float]] = {}
_MAX_CACHE_SIZE = 10000


def _cleanup_google_token_cache() -> None:
    """Remove expired entries from the cache."""
    if len(_google_token_cache) < _MAX_CACHE_SIZE:
        return

    now = time.time()
    expired = [k for k, (_, _, _, exp) in _google_token_cache.items() if exp < now]
    for k in expired:
        del _google_token_cache[k]


def _unauthorized(detail: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail=detail,
        headers={"WWW-Authenticate": "Bearer"},
    )


def _verify_google_token(token: str) -> UserIdentity:
    """
    Verify a Google ID token against every configured client id.

    Checks signature (Google's public keys), expiry, audience and issuer.
    """
    valid_client_ids = settings.valid_google_client_ids
    if not valid_client_ids:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Server misconfiguration: no Google client IDs configured",
        )

    last_error: str | None = None
    for client_id in valid_client_ids:
        try:
            idinfo = id_token.verify_oauth2_token(  # type: ignore[no-untyped-call]
                token,
                google_requests.Request(),  # type: ignore[no-untyped-call]
                client_id,
            )
        except ValueError as e:
            last_error = str(e)
            # Android tokens carry another client id as audience
            if "audience" in last_error.lower():
                continue
            break

        user_id = idinfo.get("sub")
        if not user_id:
            raise _unauthorized("Invalid token: missing user ID")

        email = idinfo.get("email")
        name = idinfo.get("name")

        # Cache until expiry, with a 60s buffer
        expiry = idinfo.get("exp", time.time() + 3600) - 60
        _cleanup_google_token_cache()
        _google_token_cache[token] = (user_id, email, name, expiry)

        return UserIdentity(
            oauth_provider="oauth:google", external_id=user_id, email=email, name=name
        )

    logger.warning(
        "google_token_validation_failed",
        client_ids_tried=len(valid_client_ids),
        audience_mismatch="audience" in (last_error or "").lower(),
    )
    if last_error and "audience" in last_error.lower():
        raise _unauthorized("Invalid token audience. Token not issued for this application.")
    raise _unauthorized("Invalid Google ID token")


async def get_user_from_google_token(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> UserIdentity:
    """
    FastAPI dependency to validate Google ID token from Authorization header.

    Accepts: Authorization: Bearer {google_id_token}

    Raises:
        HTTPException 401 if no token or invalid token
    """
    if credentials is None:
        raise _unauthorized("Authorization header required")

    token = credentials.credentials

    # Check cache first (avoids network call to Google)
    cached = _google_token_cache.get(token)
    if cached is not None:
        user_id, email, name, expiry = cached
        if time.time() < expiry:
            return UserIdentity(
                oauth_provider="oauth:google", external_id=user_id, email=email, name=name
            )
        del _google_token_cache[token]

    return _verify_google_token(token)


async def get_current_account(
    user: UserIdentity = Depends(get_user_from_google_token),
    db: AsyncSession = Depends(get_write_db),
) -> AccountData:
    """
    Account of the authenticated owner.

    Accounts are created by POST /v1/session; before that every owner
    endpoint reports the account as not found.
    """
    account = await AccountService(db).get_account_by_identity(user.to_account_identity())
    if account is None:
        raise ResourceNotFoundError("Account", f"{user.oauth_provider}:{user.external_id}")
    return account


# ============================================================================
# Application services (created in the lifespan, stored on app.state)
# ============================================================================


def get_pipeline(request: Request) -> GatewayPipeline:
    return request.app.state.pipeline  # type: ignore[no-any-return]


def get_extractor(request: Request) -> ContentExtractor:
    return request.app.state.extractor  # type: ignore[no-any-return]


def get_usage_recorder(request: Request) -> UsageRecorder:
    return request.app.state.usage_recorder  # type: ignore[no-any-return]


def get_payment_provider(request: Request) -> PaymentProvider:
    """Stripe provider, or 503 when payments are not configured."""
    provider: PaymentProvider | None = getattr(request.app.state, "payment_provider", None)
    if provider is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Payment provider not configured",
        )
    return provider
