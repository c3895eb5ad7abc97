"""Image generation endpoints proxied to the Gemini API."""

from __future__ import annotations

import logging
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context
from routers.rate_limit import quota_gate
from services.credits import consume_credits, refund_credits
from services.errors import UpstreamError, ValidationError
from services.generation import (
    GeminiImageClient,
    ImageInput,
    build_generation_prompt,
    build_suggestion_instruction,
    get_generation_client,
    sanitize_prompt,
    validate_images,
)
from services.quota import GENERATE_IMAGE, SUGGEST_PROMPTS, QuotaDecision
from services.security_log import log_security_event

router = APIRouter()
logger = logging.getLogger(__name__)


class ImagePayload(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    data: str
    mime_type: str = Field(alias="mimeType")

    def to_input(self) -> ImageInput:
        return ImageInput(data=self.data, mime_type=self.mime_type)


class GenerateImageRequest(BaseModel):
    images: List[ImagePayload] = Field(default_factory=list)
    prompt: str = ""
    mode: Literal["single", "studio"] = "single"


class SuggestPromptsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    images: List[ImagePayload] = Field(default_factory=list)
    themes: List[str] = Field(default_factory=list)
    template_id: Optional[str] = Field(default=None, alias="templateId")


@router.post("/image")
async def generate_image(
    payload: GenerateImageRequest,
    request: Request,
    quota: QuotaDecision = Depends(quota_gate(GENERATE_IMAGE)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
    client: GeminiImageClient = Depends(get_generation_client),
):
    images = [image.to_input() for image in payload.images]
    validate_images(images, user_id=auth.user_id, request=request)
    prompt = sanitize_prompt(payload.prompt, user_id=auth.user_id, request=request)

    cost = max(int(settings.CREDIT_COST_GENERATE_IMAGE), 0)
    charge = await consume_credits(auth.user_id, db, cost=cost, reason="Image generation")

    try:
        image_base64 = await client.generate_image(images, build_generation_prompt(prompt, payload.mode, len(images)))
    except UpstreamError as exc:
        logger.error("Image generation failed for user %s: %s", auth.user_id, exc.detail)
        log_security_event("error", "critical", user_id=auth.user_id, request=request, message=exc.detail)
        if charge["charged"]:
            await refund_credits(auth.user_id, db, credits=charge["charged"], reason="Image generation failed")
        raise

    balance = charge["balance_after"]
    return {
        "imageUrl": f"data:image/png;base64,{image_base64}",
        "remainingRequests": quota.remaining,
        "creditsRemaining": balance,
    }


@router.post("/suggestions")
async def suggest_prompts(
    payload: SuggestPromptsRequest,
    request: Request,
    quota: QuotaDecision = Depends(quota_gate(SUGGEST_PROMPTS)),
    auth: AuthContext = Depends(get_auth_context),
    client: GeminiImageClient = Depends(get_generation_client),
):
    images = [image.to_input() for image in payload.images]
    validate_images(images, user_id=auth.user_id, request=request)
    themes = [theme.strip() for theme in payload.themes if theme and theme.strip()]
    if not themes:
        raise ValidationError("No themes provided")
    if payload.template_id:
        try:
            instruction = build_suggestion_instruction(themes, len(images), payload.template_id)
        except ValidationError:
            log_security_event(
                "template_invalid",
                "medium",
                user_id=auth.user_id,
                request=request,
                template_id=payload.template_id,
            )
            raise
    else:
        instruction = build_suggestion_instruction(themes, len(images))

    prompts = await client.suggest_prompts(images, instruction)
    return {"prompts": prompts, "remainingRequests": quota.remaining}
