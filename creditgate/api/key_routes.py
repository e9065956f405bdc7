"""
API Key Routes - Owner-scoped key lifecycle.

Every operation is scoped to the authenticated account. A key that belongs to
another account is reported as not found.

NO DICTIONARIES - All requests/responses use Pydantic models.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, Query, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from creditgate.api.dependencies import get_current_account
from creditgate.db.session import get_read_db, get_write_db
from creditgate.models.api import (
    APIKeyCreateRequest,
    APIKeyCreateResponse,
    APIKeyListResponse,
    APIKeyResponse,
    APIKeyStatsResponse,
    APIKeyUpdateRequest,
)
from creditgate.models.domain import AccountData, APIKeyData
from creditgate.services.api_key import APIKeyService

router = APIRouter(prefix="/v1/keys", tags=["api-keys"])


def _to_response(key: APIKeyData) -> APIKeyResponse:
    return APIKeyResponse(
        key_id=key.key_id,
        name=key.name,
        lookup_prefix=key.lookup_prefix,
        is_active=key.is_active,
        created_at=key.created_at,
        expires_at=key.expires_at,
        last_used_at=key.last_used_at,
        total_requests=key.total_requests,
    )


@router.post("", response_model=APIKeyCreateResponse, status_code=status.HTTP_201_CREATED)
async def create_key(
    body: APIKeyCreateRequest,
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_write_db),
) -> APIKeyCreateResponse:
    """
    Create an API key.

    The plaintext key is in this response only. It cannot be retrieved again.
    """
    generated = await APIKeyService(db).create_api_key(
        account.account_id, body.name, body.expires_in_days
    )
    return APIKeyCreateResponse(
        key_id=generated.key_id,
        name=generated.name,
        api_key=generated.plaintext_key,
        lookup_prefix=generated.lookup_prefix,
        created_at=generated.created_at,
        expires_at=generated.expires_at,
    )


@router.get("", response_model=APIKeyListResponse)
async def list_keys(
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_read_db),
) -> APIKeyListResponse:
    keys = await APIKeyService(db).list_api_keys(account.account_id)
    return APIKeyListResponse(keys=[_to_response(k) for k in keys], total_count=len(keys))


@router.get("/{key_id}", response_model=APIKeyResponse)
async def get_key(
    key_id: UUID,
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_read_db),
) -> APIKeyResponse:
    return _to_response(await APIKeyService(db).get_api_key(account.account_id, key_id))


@router.patch("/{key_id}", response_model=APIKeyResponse)
async def rename_key(
    key_id: UUID,
    body: APIKeyUpdateRequest,
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_write_db),
) -> APIKeyResponse:
    key = await APIKeyService(db).rename_api_key(account.account_id, key_id, body.name)
    return _to_response(key)


@router.post("/{key_id}/revoke", response_model=APIKeyResponse)
async def revoke_key(
    key_id: UUID,
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_write_db),
) -> APIKeyResponse:
    """Revoke a key. The next request presenting it is rejected."""
    key = await APIKeyService(db).revoke_api_key(account.account_id, key_id)
    return _to_response(key)


@router.post("/{key_id}/reactivate", response_model=APIKeyResponse)
async def reactivate_key(
    key_id: UUID,
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_write_db),
) -> APIKeyResponse:
    key = await APIKeyService(db).reactivate_api_key(account.account_id, key_id)
    return _to_response(key)


@router.delete("/{key_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_key(
    key_id: UUID,
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_write_db),
) -> Response:
    await APIKeyService(db).delete_api_key(account.account_id, key_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/{key_id}/stats", response_model=APIKeyStatsResponse)
async def get_key_stats(
    key_id: UUID,
    period_days: int = Query(30, ge=1, le=365),
    account: AccountData = Depends(get_current_account),
    db: AsyncSession = Depends(get_read_db),
) -> APIKeyStatsResponse:
    """Request totals for one key over the last period_days."""
    summary = await APIKeyService(db).get_key_stats(account.account_id, key_id, period_days)
    return APIKeyStatsResponse(
        key_id=summary.key_id,
        period_days=summary.period_days,
        total_requests=summary.total_requests,
        successful_requests=summary.successful_requests,
        failed_requests=summary.failed_requests,
        credits_charged=summary.credits_charged,
        last_used_at=summary.last_used_at,
    )
