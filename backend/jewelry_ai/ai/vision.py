"""
Jewelry photo analysis through an OpenAI-compatible vision chat model.
"""
from __future__ import annotations

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import httpx
from pydantic import BaseModel, Field

from ..config import settings
from ..exceptions import VisionAnalysisError
from ..logger import logger
from .json_guard import extract_json

SYSTEM_PROMPT = """
You are a fine jewelry expert and design advisor working inside a premium jewelry constructor application.

You are given a photo of a jewelry piece uploaded by a user.
Your task is to analyze the image and propose OPTIONAL, respectful design improvements.

Important rules:
- Never criticize or devalue the original piece.
- Never use technical or AI-related terminology.
- Never assume certainty where the image is unclear.
- All improvements must be optional and reversible.
- The user must always be able to keep the original design unchanged.

ANALYSIS OBJECTIVES

From the image, infer as carefully as possible:
- Jewelry type (ring, pendant, earrings, bracelet, or similar)
- Presence and approximate configuration of stones
- Apparent metal and surface finish (use cautious language)
- Overall proportions and visual balance
- General stylistic character (classic, minimal, vintage, bold, etc.)

If something is unclear, state it politely as an assumption.

SUGGESTED IMPROVEMENTS

Suggest enhancements only when they provide real craftsmanship or design value.

Allowed categories:
1) Material & finish refinement
2) Stone or setting enhancement (only if stones are visible or very likely)
3) Proportions & balance
4) Craftsmanship & detailing

For each suggestion, include:
- Title (short, elegant)
- What would change (1 sentence)
- Why it helps (1 sentence, craftsmanship-based)
- Impact level: Subtle / Moderate / Bold
- Character note (only if the original character may slightly change)

Restrictions:
- Do not suggest random decoration.
- Do not reference brands or famous designs.
- Do not mention price, value, or resale.
- Do not push luxury upgrades aggressively.

Tone: calm, precise, premium, like a jeweler advising a client in a high-end showroom.
No emojis, no marketing language, no exclamation marks.

If the image quality is insufficient, ask for at most one clarification and still
provide the "Keep original design" option.

REQUIRED JSON OUTPUT STRUCTURE

Respond with a JSON object matching this exact structure. Do not include any text outside the JSON.

{
  "piece_description": "string: one neutral sentence describing the jewelry",
  "confidence_note": "string: brief statement about image quality or assumptions made",
  "detected_attributes": {
    "jewelry_type": "string: ring | pendant | earrings | bracelet | brooch | necklace | other",
    "has_stones": boolean,
    "stone_description": "string | null: only if has_stones is true",
    "apparent_metal": "string: e.g. 'appears to be white gold or platinum'",
    "apparent_finish": "string: e.g. 'polished with subtle brushed accents'",
    "style_character": "string: e.g. 'minimalist contemporary'"
  },
  "improvement_categories": [
    {
      "category_id": "string: material_finish | stone_setting | proportion_balance | craftsmanship_detail",
      "category_label": "string: human-readable category name",
      "suggestions": [
        {
          "suggestion_id": "string: unique identifier for this suggestion",
          "title": "string: short, elegant title",
          "description": "string: what would change (1 sentence)",
          "benefit": "string: why this improves the piece (1 sentence, craftsmanship-based)",
          "impact_level": "string: subtle | moderate | bold",
          "character_note": "string | null: only if the original character may slightly change"
        }
      ]
    }
  ],
  "keep_original": {
    "title": "Keep Original Design",
    "description": "Preserve the piece exactly as designed, honoring the original vision.",
    "is_default": true
  },
  "preview_guidance": {
    "summary": "string: one sentence describing overall visual direction if suggestions applied",
    "key_visual_changes": ["string: list of 2-4 primary visual differences"]
  },
  "analysis_limitations": "string | null: any factors that limited the analysis",
  "clarification_request": null
}

If the image quality is insufficient or the object is unclear, include a clarification_request:

{
  "clarification_request": {
    "type": "image_quality | object_recognition",
    "message": "string: user-friendly message explaining what's needed"
  }
}
""".strip()

USER_MESSAGE = "Please analyze this jewelry piece and provide structured improvement suggestions."

IMPACT_LEVELS = ("subtle", "moderate", "bold")


class DetectedAttributes(BaseModel):
    jewelry_type: str = "unknown"
    has_stones: bool = False
    stone_description: Optional[str] = None
    apparent_metal: str = "uncertain"
    apparent_finish: str = "polished"
    style_character: str = "classic"


class VisionSuggestion(BaseModel):
    suggestion_id: str
    title: str
    description: str = ""
    benefit: str = ""
    impact_level: str = "moderate"
    character_note: Optional[str] = None


class VisionCategory(BaseModel):
    category_id: str
    category_label: str = ""
    suggestions: List[VisionSuggestion] = Field(default_factory=list)


class KeepOriginalOption(BaseModel):
    title: str = "Keep Original Design"
    description: str = "Preserve the piece exactly as designed, honoring the original vision."
    is_default: bool = True


class PreviewGuidance(BaseModel):
    summary: str = ""
    key_visual_changes: List[str] = Field(default_factory=list)


class ClarificationRequest(BaseModel):
    type: str = "image_quality"
    message: str = ""


class VisionAnalysis(BaseModel):
    success: bool
    error_message: Optional[str] = None
    piece_description: str = ""
    confidence_note: str = ""
    detected_attributes: DetectedAttributes = Field(default_factory=DetectedAttributes)
    improvement_categories: List[VisionCategory] = Field(default_factory=list)
    keep_original: KeepOriginalOption = Field(default_factory=KeepOriginalOption)
    preview_guidance: Optional[PreviewGuidance] = None
    analysis_limitations: Optional[str] = None
    clarification_request: Optional[ClarificationRequest] = None

    @classmethod
    def failure(cls, message: str) -> "VisionAnalysis":
        return cls(success=False, error_message=message)


def _text(value: Any, default: str = "") -> str:
    if value is None:
        return default
    value = str(value).strip()
    return value or default


def _optional_text(value: Any) -> Optional[str]:
    value = _text(value)
    return value or None


def normalize_impact_level(value: Any) -> str:
    level = _text(value).lower()
    return level if level in IMPACT_LEVELS else "moderate"


def parse_analysis_payload(data: Dict[str, Any]) -> VisionAnalysis:
    """Map the model's snake_case JSON onto VisionAnalysis, filling defaults for gaps."""
    attrs = data.get("detected_attributes") or {}
    if not isinstance(attrs, dict):
        attrs = {}

    categories: List[VisionCategory] = []
    for raw_category in data.get("improvement_categories") or []:
        if not isinstance(raw_category, dict):
            continue
        suggestions = []
        for index, raw in enumerate(raw_category.get("suggestions") or []):
            if not isinstance(raw, dict) or not _text(raw.get("title")):
                continue
            suggestions.append(
                VisionSuggestion(
                    suggestion_id=_text(raw.get("suggestion_id"), f"{_text(raw_category.get('category_id'), 'suggestion')}_{index}"),
                    title=_text(raw.get("title")),
                    description=_text(raw.get("description")),
                    benefit=_text(raw.get("benefit")),
                    impact_level=normalize_impact_level(raw.get("impact_level")),
                    character_note=_optional_text(raw.get("character_note")),
                )
            )
        if not suggestions:
            continue
        categories.append(
            VisionCategory(
                category_id=_text(raw_category.get("category_id"), "craftsmanship_detail"),
                category_label=_text(raw_category.get("category_label")),
                suggestions=suggestions,
            )
        )

    keep = data.get("keep_original")
    keep_original = KeepOriginalOption()
    if isinstance(keep, dict):
        keep_original = KeepOriginalOption(
            title=_text(keep.get("title"), keep_original.title),
            description=_text(keep.get("description"), keep_original.description),
            is_default=bool(keep.get("is_default", True)),
        )

    guidance = None
    raw_guidance = data.get("preview_guidance")
    if isinstance(raw_guidance, dict):
        changes = raw_guidance.get("key_visual_changes") or []
        guidance = PreviewGuidance(
            summary=_text(raw_guidance.get("summary")),
            key_visual_changes=[_text(c) for c in changes if _text(c)] if isinstance(changes, list) else [],
        )

    clarification = None
    raw_clarification = data.get("clarification_request")
    if isinstance(raw_clarification, dict) and _text(raw_clarification.get("message")):
        clarification = ClarificationRequest(
            type=_text(raw_clarification.get("type"), "image_quality"),
            message=_text(raw_clarification.get("message")),
        )

    return VisionAnalysis(
        success=True,
        piece_description=_text(data.get("piece_description")),
        confidence_note=_text(data.get("confidence_note")),
        detected_attributes=DetectedAttributes(
            jewelry_type=_text(attrs.get("jewelry_type"), "unknown"),
            has_stones=bool(attrs.get("has_stones", False)),
            stone_description=_optional_text(attrs.get("stone_description")),
            apparent_metal=_text(attrs.get("apparent_metal"), "uncertain"),
            apparent_finish=_text(attrs.get("apparent_finish"), "polished"),
            style_character=_text(attrs.get("style_character"), "classic"),
        ),
        improvement_categories=categories,
        keep_original=keep_original,
        preview_guidance=guidance,
        analysis_limitations=_optional_text(data.get("analysis_limitations")),
        clarification_request=clarification,
    )


class VisionAnalyzer(ABC):
    """Anything that can turn a jewelry photo into a VisionAnalysis."""

    @abstractmethod
    async def analyze_image_url(self, image_url: str) -> VisionAnalysis:
        raise NotImplementedError

    @abstractmethod
    async def analyze_base64(self, data: str, content_type: str = "image/jpeg") -> VisionAnalysis:
        raise NotImplementedError


def is_retryable_status(status_code: int) -> bool:
    """Rate limits and server errors are worth another attempt; other 4xx are not."""
    return status_code == 429 or status_code >= 500


class OpenAIVisionClient(VisionAnalyzer):
    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        max_retries: Optional[int] = None,
        retry_delay: Optional[float] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.OPENAI_VISION_API_KEY
        self.base_url = (base_url or settings.OPENAI_VISION_BASE_URL).rstrip("/")
        self.model = model or settings.OPENAI_VISION_MODEL
        self.max_retries = settings.OPENAI_VISION_MAX_RETRIES if max_retries is None else max_retries
        self.retry_delay = settings.OPENAI_VISION_RETRY_DELAY_SECONDS if retry_delay is None else retry_delay
        self.timeout = timeout or settings.OPENAI_VISION_TIMEOUT_SECONDS
        self.transport = transport

    async def analyze_image_url(self, image_url: str) -> VisionAnalysis:
        return await self._analyze(image_url)

    async def analyze_base64(self, data: str, content_type: str = "image/jpeg") -> VisionAnalysis:
        return await self._analyze(f"data:{content_type};base64,{data}")

    def _build_request(self, image_ref: str) -> Dict[str, Any]:
        return {
            "model": self.model,
            "max_tokens": settings.OPENAI_VISION_MAX_TOKENS,
            "temperature": settings.OPENAI_VISION_TEMPERATURE,
            "response_format": {"type": "json_object"},
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {
                    "role": "user",
                    "content": [
                        {
                            "type": "image_url",
                            "image_url": {"url": image_ref, "detail": settings.OPENAI_VISION_IMAGE_DETAIL},
                        },
                        {"type": "text", "text": USER_MESSAGE},
                    ],
                },
            ],
        }

    async def _analyze(self, image_ref: str) -> VisionAnalysis:
        if not self.api_key:
            logger.error("Vision API key is not configured")
            return VisionAnalysis.failure("Vision analysis is not configured.")

        payload = self._build_request(image_ref)
        last_error: Optional[Exception] = None

        for attempt in range(self.max_retries + 1):
            try:
                body = await self._send(payload)
                return self._parse_response(body)
            except VisionAnalysisError as e:
                logger.error(f"Vision analysis failed without retry: {e.message}")
                return VisionAnalysis.failure("Unable to analyze the image at this time. Please try again later.")
            except httpx.HTTPError as e:
                last_error = e
                logger.warning(
                    f"Vision API call failed (attempt {attempt + 1}/{self.max_retries + 1}): {e}",
                    extra={"attempt": attempt + 1},
                )
                if attempt < self.max_retries:
                    await asyncio.sleep(self.retry_delay)

        logger.error(f"Vision analysis failed after retries: {last_error}")
        return VisionAnalysis.failure("Unable to analyze the image at this time. Please try again later.")

    async def _send(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, transport=self.transport) as client:
            response = await client.post(
                "/chat/completions",
                json=payload,
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
            if response.status_code >= 400:
                logger.error(f"Vision API error: {response.status_code} - {response.text[:500]}")
                if not is_retryable_status(response.status_code):
                    raise VisionAnalysisError(f"Vision API rejected the request with status {response.status_code}")
            response.raise_for_status()
            try:
                return response.json()
            except ValueError:
                logger.error("Vision API returned a non-JSON body")
                return {}

    def _parse_response(self, body: Dict[str, Any]) -> VisionAnalysis:
        choices = body.get("choices") or []
        if not choices:
            logger.warning("Vision response contained no choices")
            return VisionAnalysis.failure("Analysis returned no results.")

        content = ((choices[0] or {}).get("message") or {}).get("content")
        if not content:
            logger.warning("Vision response message content is empty")
            return VisionAnalysis.failure("Analysis returned empty results.")

        raw_json = extract_json(content)
        if raw_json is None:
            logger.error("Vision response did not contain a JSON object")
            return VisionAnalysis.failure("Analysis results could not be processed.")
        try:
            data = json.loads(raw_json)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to parse vision response JSON: {e}")
            return VisionAnalysis.failure("Analysis results could not be processed.")
        if not isinstance(data, dict):
            return VisionAnalysis.failure("Analysis results could not be processed.")

        analysis = parse_analysis_payload(data)
        logger.info(
            "Vision analysis parsed",
            extra={
                "jewelry_type": analysis.detected_attributes.jewelry_type,
                "categories": len(analysis.improvement_categories),
                "needs_clarification": analysis.clarification_request is not None,
            },
        )
        return analysis
