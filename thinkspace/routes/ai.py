"""
AI settings API Routes

Curated model list and the user's own OpenRouter key (BYOK).
"""
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field

from thinkspace.middleware.auth import get_user_id
from thinkspace.pipeline.errors import CredentialMissingError
from thinkspace.routes.deps import get_pipeline
from thinkspace.worker import Pipeline

router = APIRouter()


class SetOpenRouterKeyRequest(BaseModel):
    api_key: str = Field(..., min_length=8, max_length=500)


@router.get("/models")
async def list_models(
    user_id: str = Depends(get_user_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    return {
        "success": True,
        "data": {
            "curated": pipeline.models.curated_models,
            "default": pipeline.models.default_model,
            "has_own_key": await pipeline.secrets.has_user_key(user_id),
        },
    }


@router.put("/openrouter-key")
async def set_openrouter_key(
    body: SetOpenRouterKeyRequest,
    user_id: str = Depends(get_user_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    try:
        await pipeline.secrets.set_user_key(user_id, body.api_key.strip())
    except CredentialMissingError as exc:
        raise HTTPException(status_code=503, detail=exc.message)
    return {"success": True, "data": {"has_own_key": True}}


@router.delete("/openrouter-key")
async def delete_openrouter_key(
    user_id: str = Depends(get_user_id),
    pipeline: Pipeline = Depends(get_pipeline),
):
    removed = await pipeline.secrets.delete_user_key(user_id)
    return {"success": True, "data": {"has_own_key": False, "removed": removed}}
