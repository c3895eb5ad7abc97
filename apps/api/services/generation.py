"""Image generation and prompt suggestion via the Gemini API.

Request validation (image size, magic-byte MIME checks, prompt moderation)
happens here, before any quota-consuming call reaches the generative API.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import re
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

from google import genai
from google.genai import types

from config import settings
from services.errors import UpstreamError, ValidationError
from services.security_log import log_security_event

logger = logging.getLogger(__name__)


MAX_IMAGE_MB = 10
MAX_PROMPT_LENGTH = 2000

IMAGE_SIGNATURES: Dict[str, Sequence[str]] = {
    "image/png": ("89504E47",),
    "image/jpeg": ("FFD8FF",),
    "image/jpg": ("FFD8FF",),
    "image/webp": ("52494646",),
}

BLOCKED_PATTERNS = [
    re.compile(r"nude|naked|explicit|nsfw|porn|sex", re.IGNORECASE),
    re.compile(r"genital|breast|penis|vagina", re.IGNORECASE),
    re.compile(r"violence|kill|murder|death|suicide|torture|gore", re.IGNORECASE),
    re.compile(r"weapon|gun|knife|bomb|explosive", re.IGNORECASE),
    re.compile(r"hate|discrimination|racism|sexism|homophobia", re.IGNORECASE),
    re.compile(r"nazi|kkk|fascist", re.IGNORECASE),
    re.compile(r"drug|marijuana|cocaine|heroin", re.IGNORECASE),
    re.compile(r"illegal|crime|theft|robbery", re.IGNORECASE),
    re.compile(r"spam|scam|phishing|malware|virus", re.IGNORECASE),
]
SUSPICIOUS_CHARS = re.compile(r"[^\x20-\x7E\u00A0-\uFFFF]")
FILTERED = "[filtered content]"

TEMPLATE_FOCUS: Dict[str, str] = {
    "company-presentation": "corporate presentation visuals: professional layouts, brand colors, clean typography",
    "pitch-deck": "investor-ready pitch deck visuals: bold graphics, data visualization, startup aesthetics",
    "enhance": "image enhancement: sharper detail, better color, less noise, original style untouched",
    "restore": "photo restoration: remove scratches and tears, reconstruct missing parts, keep it authentic",
    "ecommerce-product": "catalog product photography: clean backgrounds and consistent lighting",
    "restaurant-food": "restaurant food photography: appetizing presentation and consistent styling",
    "social-media-post": "social media posts that keep one cohesive visual identity across a feed",
    "mascot-2d": "2D mascot variations that keep the same character design, proportions and style",
    "mascot-3d": "3D character variations that keep the same design DNA across poses and angles",
    "game-concept-art": "game concept art that keeps one artistic style and visual language",
}


@dataclass(frozen=True)
class ImageInput:
    data: str
    mime_type: str


def decoded_size_mb(base64_data: str) -> float:
    return (len(base64_data) * 3 / 4) / (1024 * 1024)


def has_valid_signature(base64_data: str, mime_type: str) -> bool:
    """Check the declared MIME type against the file's leading magic bytes."""
    signatures = IMAGE_SIGNATURES.get(mime_type)
    if not signatures:
        return False
    try:
        head = base64.b64decode(base64_data[:20] + "=" * (-len(base64_data[:20]) % 4))
    except (binascii.Error, ValueError):
        return False
    hex_head = head[:4].hex().upper()
    return any(hex_head.startswith(signature) for signature in signatures)


def validate_images(images: Sequence[ImageInput], *, user_id: Optional[str] = None, request=None) -> None:
    if not images:
        raise ValidationError("No image provided")
    for image in images:
        if decoded_size_mb(image.data) > MAX_IMAGE_MB:
            raise ValidationError(f"Image too large. Maximum size: {MAX_IMAGE_MB}MB")
        if not has_valid_signature(image.data, image.mime_type):
            log_security_event(
                "invalid_mime",
                "medium",
                user_id=user_id,
                request=request,
                mime_type=image.mime_type,
                expected_types=sorted(IMAGE_SIGNATURES),
            )
            raise ValidationError("Invalid or corrupted file type. Use PNG, JPG, JPEG or WEBP.")


def sanitize_prompt(prompt: str, *, user_id: Optional[str] = None, request=None) -> str:
    """Enforce length, replace blocked content and strip control characters."""
    if not prompt or not prompt.strip():
        raise ValidationError("No prompt provided")
    if len(prompt) > MAX_PROMPT_LENGTH:
        raise ValidationError(f"Prompt too long. Maximum of {MAX_PROMPT_LENGTH} characters.")

    sanitized = prompt.strip()
    removed: List[str] = []
    for pattern in BLOCKED_PATTERNS:
        removed.extend(match.group(0) for match in pattern.finditer(sanitized))
        sanitized = pattern.sub(FILTERED, sanitized)
    stripped = SUSPICIOUS_CHARS.sub("", sanitized)
    modified = bool(removed) or stripped != sanitized
    sanitized = stripped.strip()

    if modified:
        log_security_event(
            "prompt_sanitized",
            "low",
            user_id=user_id,
            request=request,
            original_length=len(prompt),
            sanitized_length=len(sanitized),
            removed_content=removed[:10],
        )
    return sanitized


def build_generation_prompt(prompt: str, mode: str, image_count: int) -> str:
    fusion = mode == "studio" and image_count > 1
    payload = {
        "task": "idea_fusion" if fusion else "dna_preservation",
        "mode": mode,
        "instruction": prompt,
        "image_count": image_count,
        "requirements": {"preserve_style": True, "maintain_coherence": True, "quality": "high"},
    }
    return (
        "Generate an image following this JSON specification:\n"
        f"{json.dumps(payload, indent=2)}\n\n"
        "Interpret the instruction field and create the image accordingly. "
        "Maintain visual coherence and style consistency."
    )


def build_suggestion_instruction(themes: Sequence[str], image_count: int, template_id: Optional[str] = None) -> str:
    if template_id and template_id not in TEMPLATE_FOCUS:
        raise ValidationError("Invalid template")

    theme_list = ", ".join(themes)
    if template_id:
        lead = (
            f"You are a specialist in {TEMPLATE_FOCUS[template_id]}. "
            "Maintain the visual DNA of the reference image while adapting it to this context."
        )
    elif image_count > 1:
        lead = (
            "You are a world-class Visual Director performing Idea Fusion. "
            "The first image is the DNA/style anchor; the others are idea layers to be fused."
        )
    else:
        lead = (
            "You are a world-class Visual Director performing DNA Preservation. "
            "Focus on the aesthetic DNA of the provided image to maintain absolute fidelity."
        )
    return f"{lead}\nThemes: [{theme_list}].\nOutput exactly 2 high-concept prompts per theme in JSON format."


class GeminiImageClient:
    """Async calls to the Gemini image and text models."""

    def __init__(self, api_key: str, image_model: str, text_model: str):
        if not api_key:
            raise UpstreamError("Image generation is not configured", detail="GEMINI_API_KEY is empty")
        self.client = genai.Client(api_key=api_key)
        self.image_model = image_model
        self.text_model = text_model

    @staticmethod
    def _image_parts(images: Sequence[ImageInput]) -> List[types.Part]:
        return [
            types.Part.from_bytes(data=base64.b64decode(image.data), mime_type=image.mime_type)
            for image in images
        ]

    async def generate_image(self, images: Sequence[ImageInput], prompt: str) -> str:
        """Return the first generated image as base64."""
        try:
            response = await self.client.aio.models.generate_content(
                model=self.image_model,
                contents=[*self._image_parts(images), prompt],
            )
        except Exception as exc:
            raise UpstreamError("Could not generate the image", detail=str(exc)) from exc

        for candidate in response.candidates or []:
            for part in (candidate.content.parts if candidate.content else None) or []:
                if part.inline_data and part.inline_data.data:
                    return base64.b64encode(part.inline_data.data).decode("ascii")
        raise UpstreamError("Could not generate the image", detail="no inline image in response")

    async def suggest_prompts(self, images: Sequence[ImageInput], instruction: str) -> List[str]:
        try:
            response = await self.client.aio.models.generate_content(
                model=self.text_model,
                contents=[*self._image_parts(images), instruction],
                config=types.GenerateContentConfig(
                    response_mime_type="application/json",
                    response_schema=list[str],
                ),
            )
            prompts = json.loads(response.text or "[]")
        except ValueError as exc:
            raise UpstreamError("Could not generate suggestions", detail=f"invalid JSON: {exc}") from exc
        except Exception as exc:
            raise UpstreamError("Could not generate suggestions", detail=str(exc)) from exc
        return [str(prompt) for prompt in prompts if prompt]


def get_generation_client() -> GeminiImageClient:
    """FastAPI dependency for the configured Gemini client."""
    return GeminiImageClient(
        api_key=settings.GEMINI_API_KEY,
        image_model=settings.GEMINI_IMAGE_MODEL,
        text_model=settings.GEMINI_TEXT_MODEL,
    )
