"""
Lumi — Tool Executors

================================================================================
MODEL-ISSUED FUNCTION CALLS
================================================================================

Two tools are declared at session open:

  generate_educational_image(prompt)
      → "working" system message → external image model →
        assistant message with the image + success chime
      → on failure: system message naming the reason (quota / permission /
        generic) and a response telling the model to apologize

  update_student_progress(score, difficulty, reason)
      → LearningStats replaced wholesale + notification chime

Every dispatched call id gets exactly one ToolResponse, success or not.
================================================================================
"""

from __future__ import annotations

import base64
import logging
from typing import Any, Dict, List, Optional, Sequence

from google.genai import types

from ..core.config import ModelConfig, model_cfg
from ..core.errors import ErrorKind, ImageGenerationError, ToolArgumentError, classify_error
from ..core.interfaces import GeneratedImage, ImageGenerator, ToolHost
from ..core.models import Difficulty, FunctionCall, LearningStats, ToolResponse

logger = logging.getLogger("lumi.tools")

IMAGE_TOOL = "generate_educational_image"
PROGRESS_TOOL = "update_student_progress"

TOOL_DECLARATIONS: List[Dict[str, Any]] = [
    {
        "name": IMAGE_TOOL,
        "description": (
            "Generates a visual aid. Use this PROACTIVELY when explaining physical objects, "
            "scientific concepts, math geometry, or history."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "prompt": {
                    "type": "STRING",
                    "description": (
                        "A highly detailed, descriptive prompt for the image generator. Include "
                        "style (e.g. \"photorealistic\", \"colorful cartoon diagram\", \"labeled "
                        "scientific illustration\"), colors, and key elements."
                    ),
                },
            },
            "required": ["prompt"],
        },
    },
    {
        "name": PROGRESS_TOOL,
        "description": (
            "Updates the student's understanding score and difficulty level based on their "
            "recent responses. Call this frequently to keep the dashboard in sync."
        ),
        "parameters": {
            "type": "OBJECT",
            "properties": {
                "score": {
                    "type": "NUMBER",
                    "description": "Current estimated understanding score (0-100) based on correctness and confidence.",
                },
                "difficulty": {
                    "type": "STRING",
                    "description": 'The difficulty level. MUST be one of: "Beginner", "Intermediate", "Advanced".',
                },
                "reason": {
                    "type": "STRING",
                    "description": (
                        "Brief reason for the update (e.g. \"Correctly identified photosynthesis "
                        "process\", \"Seemed confused by fractions\")."
                    ),
                },
            },
            "required": ["score", "difficulty", "reason"],
        },
    },
]


def live_tools() -> List[Dict[str, Any]]:
    """Tool config in the shape the Live API expects."""
    return [{"function_declarations": TOOL_DECLARATIONS}]


# ---------------------------------------------------------------------------
# External image endpoint
# ---------------------------------------------------------------------------

class GeminiImageGenerator:
    """ImageGenerator backed by generate_content on an image-capable model."""

    def __init__(self, client: Any, config: ModelConfig = model_cfg) -> None:
        self._client = client
        self._model = config.image_model

    async def generate(self, prompt: str, aspect_ratio: str) -> GeneratedImage:
        response = await self._client.aio.models.generate_content(
            model=self._model,
            contents=prompt,
            config=types.GenerateContentConfig(
                image_config=types.ImageConfig(aspect_ratio=aspect_ratio),
            ),
        )
        for candidate in response.candidates or []:
            content = candidate.content
            for part in (content.parts if content and content.parts else []):
                inline = part.inline_data
                if inline is not None and inline.data:
                    data = inline.data
                    if isinstance(data, str):
                        data = base64.b64decode(data)
                    return GeneratedImage(data=data, mime_type=inline.mime_type or "image/png")
        raise ImageGenerationError("No image data returned from model")


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------

def _require_str(args: Dict[str, Any], key: str) -> str:
    value = args.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ToolArgumentError(f"'{key}' must be a non-empty string")
    return value.strip()


class ImageGenerationTool:
    name = IMAGE_TOOL

    SUCCESS = "Image displayed."
    FAILURE = "Image generation failed. Apologize to the user."

    def __init__(self, generator: ImageGenerator, aspect_ratio: str = model_cfg.image_aspect_ratio) -> None:
        self._generator = generator
        self._aspect_ratio = aspect_ratio

    async def execute(self, call: FunctionCall, host: ToolHost) -> Dict[str, Any]:
        try:
            prompt = _require_str(call.args, "prompt")
        except ToolArgumentError as e:
            logger.warning(f"{self.name}: bad arguments: {e}")
            host.post_message("system", "Image generation failed: the request was malformed.")
            return {"result": self.FAILURE}

        host.post_message("system", f'🎨 Drawing: "{prompt}"...')
        enhanced = f"Educational illustration, clear, high-contrast, simple background: {prompt}"
        try:
            image = await self._generator.generate(enhanced, self._aspect_ratio)
        except Exception as e:
            logger.error(f"{self.name}: image generation failed: {e}")
            host.post_message("system", self.failure_text(e))
            return {"result": self.FAILURE}

        host.play_chime("success")
        host.post_message("assistant", f"Here is a visualization for: {prompt}", image=image.data_url())
        return {"result": self.SUCCESS}

    @staticmethod
    def failure_text(exc: BaseException) -> str:
        kind = classify_error(exc)
        if kind is ErrorKind.QUOTA:
            return "⚠️ Image quota exceeded. Try again later."
        if kind is ErrorKind.PERMISSION:
            return "⚠️ Permission denied for Image Generation. Check API Key billing/permissions."
        return "Image generation failed."


class ProgressUpdateTool:
    name = PROGRESS_TOOL

    SUCCESS = "Dashboard updated."

    async def execute(self, call: FunctionCall, host: ToolHost) -> Dict[str, Any]:
        stats = self.parse(call.args)
        host.replace_stats(stats)
        host.play_chime("notification")
        return {"result": self.SUCCESS}

    @staticmethod
    def parse(args: Dict[str, Any]) -> LearningStats:
        """Raises ToolArgumentError on malformed arguments."""
        raw_score = args.get("score")
        if isinstance(raw_score, bool):
            raise ToolArgumentError("'score' must be a number")
        try:
            score = float(raw_score)
        except (TypeError, ValueError):
            raise ToolArgumentError(f"'score' must be a number, got {raw_score!r}")
        if score != score:  # NaN
            raise ToolArgumentError("'score' must be a number, got NaN")

        try:
            level = Difficulty(args.get("difficulty"))
        except ValueError:
            raise ToolArgumentError(
                f"'difficulty' must be one of {[d.value for d in Difficulty]}, "
                f"got {args.get('difficulty')!r}"
            )

        reason = args.get("reason")
        return LearningStats(
            understanding_score=min(100.0, max(0.0, score)),
            difficulty_level=level,
            last_update_reason=str(reason) if reason is not None else None,
        )



class ToolDispatcher:
    """Routes function calls to executors; always yields one response per call."""

    def __init__(self, tools: Sequence[Any], log_prefix: str = "") -> None:
        self._tools: Dict[str, Any] = {tool.name: tool for tool in tools}
        self._log_prefix = log_prefix

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    async def dispatch(self, call: FunctionCall, host: ToolHost) -> ToolResponse:
        logger.info(f"{self._log_prefix}Tool call {call.name} (id={call.id})")
        tool = self._tools.get(call.name)
        if tool is None:
            logger.warning(f"{self._log_prefix}Unknown tool: {call.name}")
            return ToolResponse(id=call.id, name=call.name, response={"error": f"Unknown tool: {call.name}"})

        try:
            payload = await tool.execute(call, host)
        except ToolArgumentError as e:
            logger.warning(f"{self._log_prefix}{call.name}: bad arguments: {e}")
            host.post_message("system", f"⚠️ Could not apply {call.name}: {e}")
            payload = {"error": str(e)}
        except Exception as e:
            logger.error(f"{self._log_prefix}{call.name} failed: {e}", exc_info=True)
            host.post_message("system", f"⚠️ {call.name} failed.")
            payload = {"error": f"{call.name} failed"}
        return ToolResponse(id=call.id, name=call.name, response=payload)

    async def dispatch_all(self, calls: Sequence[FunctionCall], host: ToolHost) -> List[ToolResponse]:
        """Run calls in order; the result has one response per call."""
        responses: List[ToolResponse] = []
        for call in calls:
            responses.append(await self.dispatch(call, host))
        return responses


def default_tools(generator: Optional[ImageGenerator], config: ModelConfig = model_cfg) -> List[Any]:
    tools: List[Any] = [ProgressUpdateTool()]
    if generator is not None:
        tools.insert(0, ImageGenerationTool(generator, aspect_ratio=config.image_aspect_ratio))
    return tools
