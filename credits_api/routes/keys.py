"""
API Key Management Endpoints
============================

Endpoints for creating and managing a user's API keys.
"""

from typing import List

from fastapi import APIRouter, Depends, status

from credits_api.auth import AuthContext, get_current_user, get_key_service
from credits_api.models.schemas import APIKeyCreate, APIKeyCreated, APIKeyInfo
from credits_api.services.key_service import APIKeyService


router = APIRouter(prefix="/v1/keys", tags=["API Keys"])


@router.post(
    "",
    response_model=APIKeyCreated,
    status_code=status.HTTP_201_CREATED,
    summary="Create API Key",
    description="Create a new API key. The key is only shown once.",
)
async def create_key(
    body: APIKeyCreate,
    user: AuthContext = Depends(get_current_user),
    key_service: APIKeyService = Depends(get_key_service),
) -> APIKeyCreated:
    """
    Create a new API key.

    **Important**: The API key value is only returned once upon creation.
    Store it securely - it cannot be retrieved later.
    """
    api_key, full_key = await key_service.create_key(
        user_id=user.user_id,
        name=body.name,
        expires_at=body.expires_at,
    )
    return APIKeyCreated(api_key=APIKeyInfo.model_validate(api_key), key=full_key)


@router.get(
    "",
    response_model=List[APIKeyInfo],
    summary="List Keys",
    description="List the caller's API keys. Key values are never returned.",
)
async def list_keys(
    user: AuthContext = Depends(get_current_user),
    key_service: APIKeyService = Depends(get_key_service),
) -> List[APIKeyInfo]:
    keys = await key_service.list_keys(user.user_id)
    return [APIKeyInfo.model_validate(k) for k in keys]


@router.get(
    "/{key_id}",
    response_model=APIKeyInfo,
    summary="Get Key Details",
)
async def get_key_details(
    key_id: str,
    user: AuthContext = Depends(get_current_user),
    key_service: APIKeyService = Depends(get_key_service),
) -> APIKeyInfo:
    api_key = await key_service.get_key(key_id, user.user_id)
    return APIKeyInfo.model_validate(api_key)


@router.delete(
    "/{key_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Key",
    description="Delete one of the caller's API keys.",
)
async def delete_key(
    key_id: str,
    user: AuthContext = Depends(get_current_user),
    key_service: APIKeyService = Depends(get_key_service),
) -> None:
    """
    Delete an API key.

    The key will no longer be usable for authentication. Keys of other users
    are reported as not found.
    """
    await key_service.revoke(key_id, user.user_id)
