"""
AI provider configuration endpoints (admin role).

Credentials never leave the server unmasked: listings show the last four
characters only, and a masked value sent back on update means "unchanged".
"""

import logging
from typing import Any, Dict

from fastapi import Depends

from . import router
from .models import ProviderTestRequest, ProviderUpdate
from errors import success_response
from services.admin_auth import verify_admin
from services.ai_router import get_ai_router

logger = logging.getLogger(__name__)


@router.get("/ai-config")
async def list_providers(admin: dict = Depends(verify_admin)) -> Dict[str, Any]:
    """Every catalog provider with its stored config and health."""
    ai_router = await get_ai_router()
    return success_response(providers=await ai_router.list_providers_admin())


@router.put("/ai-config/{provider_id}")
async def update_provider(
    provider_id: str,
    update: ProviderUpdate,
    admin: dict = Depends(verify_admin),
) -> Dict[str, Any]:
    """Save credential / model / enabled flag; a new credential is tested first."""
    ai_router = await get_ai_router()
    saved = await ai_router.save_provider(
        provider_id,
        credential=update.credential,
        model_override=update.model_override,
        enabled=update.enabled,
    )
    logger.info(f"Provider {provider_id} updated by {admin.get('username') or admin['operator_id']}")
    return success_response(provider=saved.to_admin_dict())


@router.post("/ai-config/test")
async def test_provider(request: ProviderTestRequest, admin: dict = Depends(verify_admin)) -> Dict[str, Any]:
    """Check a credential against the provider's model listing; nothing is stored."""
    ai_router = await get_ai_router()
    result = await ai_router.test_credential(request.provider_id, request.credential)
    return success_response(provider_id=request.provider_id, **result)


@router.delete("/ai-config/{provider_id}")
async def delete_provider(provider_id: str, admin: dict = Depends(verify_admin)) -> Dict[str, Any]:
    ai_router = await get_ai_router()
    await ai_router.delete_provider(provider_id)
    logger.info(f"Provider {provider_id} deleted by {admin.get('username') or admin['operator_id']}")
    return success_response(provider_id=provider_id, deleted=True)
