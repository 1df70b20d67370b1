"""
Gemini integration for script writing and image generation.

- Script: Gemini 2.5 Pro via google-generativeai, PDF sent as an inline part
- Summaries: Gemini 2.5 Flash, used to shorten over-budget scene scripts
- Images: Gemini 2.5 Flash Image via REST (backgrounds + custom avatar portrait)
"""

import os
import re
import json
import base64
import logging
from typing import Optional

import httpx
import google.generativeai as genai
from google.api_core import exceptions as google_exceptions

from .errors import PermanentProviderError, TransientProviderError
from .jobs import Artifact, ImmediateResult
from .models import scene_count_for

logger = logging.getLogger(__name__)

GEMINI_API_KEY = os.environ.get("GEMINI_API_KEY") or os.environ.get("GOOGLE_API_KEY", "")
API_BASE = "https://generativelanguage.googleapis.com/v1beta"

SCRIPT_MODEL = os.environ.get("GEMINI_SCRIPT_MODEL", "gemini-2.5-pro")
SUMMARY_MODEL = os.environ.get("GEMINI_SUMMARY_MODEL", "gemini-2.5-flash")
IMAGE_MODEL = os.environ.get("GEMINI_IMAGE_MODEL", "gemini-2.5-flash-image")
IMAGE_TIMEOUT = 120


def _parse_json_response(text: str) -> dict:
    """Parse JSON from a Gemini response, handling markdown code blocks and chatter."""
    text = text.strip()
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        pass
    if "```" in text:
        block = text.split("```")[1]
        if block.startswith("json"):
            block = block[4:]
        try:
            return json.loads(block.strip())
        except json.JSONDecodeError:
            pass
    match = re.search(r"\{[\s\S]*\}", text)
    if match:
        try:
            return json.loads(match.group(0))
        except json.JSONDecodeError:
            pass
    raise PermanentProviderError("gemini", f"Gemini returned invalid JSON: {text[:200]}")


def _map_google_error(e: Exception) -> Exception:
    if isinstance(e, google_exceptions.ResourceExhausted):
        return PermanentProviderError("gemini", f"Quota exceeded: {e}", status_code=429, reason="RESOURCE_EXHAUSTED")
    if isinstance(e, google_exceptions.NotFound):
        return PermanentProviderError("gemini", f"Model not found: {e}", status_code=404, reason="NOT_FOUND")
    if isinstance(e, (google_exceptions.ServiceUnavailable, google_exceptions.DeadlineExceeded,
                      google_exceptions.InternalServerError)):
        return TransientProviderError("gemini", str(e), status_code=getattr(e, "code", None))
    if isinstance(e, google_exceptions.GoogleAPICallError):
        return PermanentProviderError("gemini", str(e), status_code=getattr(e, "code", None))
    return e


# =========================================================================
# 1. Script writing (Gemini 2.5 Pro)
# =========================================================================

SCRIPT_PROMPT = """You write narration for an AI presenter avatar, based on the attached PDF slides.

Produce a {duration}-second video script split into exactly {scene_count} scenes of 8 seconds each.

For every scene provide:
- "script": one sentence the avatar says. HARD LIMIT: {char_budget} characters excluding spaces.
  No greetings, no self-introduction, no "in this video"/"let me explain" phrasing,
  no parenthetical asides, no connective filler. One or two key ideas only.
- "visualDescription": short description of what the background shows
- "imagePrompt": a 16:9 photorealistic image prompt (lighting, palette, composition, texture)
- "videoPrompt": an 8-second camera/motion prompt (slow pan, gentle zoom, static shot)
- "priority": "high", "medium" or "low" (how much the background matters)
- "emotion": one of professional, energetic, calm, innovative, neutral

Respond with raw JSON only:
{{"scenes": [{{"sceneNumber": 1, "script": "...", "visualDescription": "...",
  "imagePrompt": "...", "videoPrompt": "...", "priority": "high", "emotion": "professional"}}]}}"""

SUMMARY_PROMPT = """Shorten this narration line to at most {max_chars} characters excluding spaces.
Keep the key message, return a single sentence, no quotes, no explanation.

Line: {text}"""


class GeminiScriptWriter:
    """Synchronous adapter: submit(pdf, duration) -> ImmediateResult(payload=script)."""

    provider = "gemini"

    def __init__(self, api_key: str = GEMINI_API_KEY):
        if not api_key:
            raise RuntimeError("GEMINI_API_KEY not set")
        genai.configure(api_key=api_key)

    def submit(self, pdf_bytes: bytes, duration: int, char_budget: int = 45) -> ImmediateResult:
        scene_count = scene_count_for(duration)
        prompt = SCRIPT_PROMPT.format(duration=duration, scene_count=scene_count, char_budget=char_budget)
        model = genai.GenerativeModel(
            SCRIPT_MODEL,
            generation_config={
                "temperature": 0.7,
                "max_output_tokens": 8192,
                "response_mime_type": "application/json",
            },
        )

        try:
            response = model.generate_content([
                {"mime_type": "application/pdf", "data": pdf_bytes},
                prompt,
            ])
        except Exception as e:
            raise _map_google_error(e) from e

        feedback = getattr(response, "prompt_feedback", None)
        if feedback is not None and getattr(feedback, "block_reason", None):
            raise PermanentProviderError("gemini", f"Script blocked by safety filter: {feedback.block_reason}")

        script = _parse_json_response(response.text)
        scenes = script.get("scenes")
        if not isinstance(scenes, list) or not scenes:
            raise PermanentProviderError("gemini", "Script response has no scenes")

        logger.info(f"Gemini script generated: {len(scenes)} scenes for {duration}s")
        return ImmediateResult(payload=script, metadata={"model": SCRIPT_MODEL})

    def summarize(self, text: str, max_chars: int) -> str:
        model = genai.GenerativeModel(SUMMARY_MODEL, generation_config={"temperature": 0.2})
        try:
            response = model.generate_content(SUMMARY_PROMPT.format(max_chars=max_chars, text=text))
        except Exception as e:
            raise _map_google_error(e) from e
        return response.text.strip().strip('"')


# =========================================================================
# 2. Image generation (Gemini 2.5 Flash Image, REST)
# =========================================================================

LIGHTING_AND_COLORS = {
    "professional": {
        "lighting": "soft natural daylight through large windows, balanced studio lighting with subtle shadows",
        "colors": "cool neutral tones with hints of blue and gray",
        "mood": "clean, focused and sophisticated",
    },
    "energetic": {
        "lighting": "bright studio lighting with dynamic highlights",
        "colors": "warm vibrant colors with pops of orange and yellow",
        "mood": "dynamic, engaging and lively",
    },
    "calm": {
        "lighting": "gentle ambient light with soft diffusion and minimal shadows",
        "colors": "cool blues and soft greens with pastel accents",
        "mood": "peaceful and contemplative",
    },
    "innovative": {
        "lighting": "modern LED accent lighting with gradient effects",
        "colors": "tech-inspired blues and purples",
        "mood": "cutting-edge and forward-thinking",
    },
    "neutral": {
        "lighting": "balanced natural and artificial lighting, even illumination",
        "colors": "natural palette with harmonious tones",
        "mood": "clear, straightforward and authentic",
    },
}

_LIGHTING_TERMS = re.compile(r"light|lighting|illuminat|glow|shadow|bright", re.I)
_CAMERA_TERMS = re.compile(r"composition|angle|shot|focus|depth|lens|frame", re.I)
_QUALITY_TERMS = re.compile(r"8k|4k|photorealistic|cinematic|detailed|quality", re.I)


def enhance_image_prompt(raw_prompt: str, emotion: Optional[str] = "professional") -> str:
    """Expand a terse background prompt into a descriptive paragraph.

    Prompts that are already long and mention lighting, camera and quality
    terms are returned unchanged.
    """
    if (
        len(raw_prompt) > 100
        and _LIGHTING_TERMS.search(raw_prompt)
        and _CAMERA_TERMS.search(raw_prompt)
        and _QUALITY_TERMS.search(raw_prompt)
    ):
        return raw_prompt

    style = LIGHTING_AND_COLORS.get((emotion or "").lower(), LIGHTING_AND_COLORS["neutral"])
    return (
        f"{raw_prompt.strip().rstrip('.')}. "
        "Photographed with a wide-angle lens in a 16:9 composition. "
        f"{style['lighting']}, creating a {style['mood']} atmosphere. "
        f"The setting features {style['colors']}, with attention to material textures. "
        "Centered framing with shallow depth of field, sharp focus on key elements. "
        "8k photorealistic quality, cinematic color grading, high dynamic range."
    )


ETHNICITY = {
    "korean": "East Asian, Korean ethnicity",
    "japanese": "East Asian, Japanese ethnicity",
    "american": "Caucasian, American ethnicity",
}


def build_avatar_prompt(settings: dict) -> str:
    nationality = (settings.get("nationality") or "").lower()
    ethnicity = ETHNICITY.get(nationality, "diverse ethnicity")
    return (
        f"A photorealistic portrait of a {settings.get('gender', 'person')} person "
        f"in their {settings.get('age_range', '30s')}, {ethnicity}, "
        f"{settings.get('style', 'professional')} style, with a {settings.get('expression', 'friendly')} expression. "
        f"Background: {settings.get('background', 'plain studio backdrop')}. "
        "Professional headshot, centered composition, 1:1 aspect ratio, studio lighting, sharp focus. "
        "Front-facing view, suitable for video avatar animation."
    )


class GeminiImageGenerator:
    """Synchronous adapter returning PNG bytes inside an ImmediateResult."""

    provider = "gemini-image"

    def __init__(self, api_key: str = GEMINI_API_KEY, model: str = IMAGE_MODEL):
        self.api_key = api_key
        self.model = model

    def _generate(self, prompt: str) -> bytes:
        if not self.api_key:
            raise PermanentProviderError(self.provider, "GEMINI_API_KEY not set")

        body = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.4, "candidateCount": 1, "responseModalities": ["IMAGE"]},
        }
        try:
            resp = httpx.post(
                f"{API_BASE}/models/{self.model}:generateContent",
                params={"key": self.api_key},
                json=body,
                timeout=IMAGE_TIMEOUT,
            )
        except httpx.HTTPError as e:
            raise TransientProviderError(self.provider, f"Request failed: {e}") from e

        if resp.status_code != 200:
            reason = None
            message = resp.text[:500]
            try:
                err = resp.json().get("error", {})
                reason = err.get("status")
                message = err.get("message", message)
            except ValueError:
                pass
            # A 429 is retried by the step executor; avatar design still
            # degrades to the preset on it through is_quota_or_not_found
            if resp.status_code == 429:
                raise TransientProviderError(self.provider, f"Rate limited: {message}",
                                             status_code=429, reason=reason)
            if reason == "RESOURCE_EXHAUSTED":
                raise PermanentProviderError(self.provider, f"Quota exceeded: {message}",
                                             status_code=resp.status_code, reason=reason)
            error_cls = TransientProviderError if resp.status_code >= 500 else PermanentProviderError
            raise error_cls(self.provider, f"HTTP {resp.status_code}: {message}",
                            status_code=resp.status_code, reason=reason)

        data = resp.json()
        candidates = data.get("candidates") or []
        if not candidates:
            block_reason = (data.get("promptFeedback") or {}).get("blockReason")
            if block_reason:
                raise PermanentProviderError(self.provider, f"Blocked by safety filter: {block_reason}")
            raise PermanentProviderError(self.provider, "No candidates in response")

        candidate = candidates[0]
        finish = candidate.get("finishReason")
        if finish and finish != "STOP":
            raise PermanentProviderError(self.provider, f"Generation did not complete: {finish}")

        for part in candidate.get("content", {}).get("parts", []):
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return base64.b64decode(inline["data"])

        raise PermanentProviderError(self.provider, "No image data in response")

    def submit(self, prompt: str, emotion: Optional[str] = None) -> ImmediateResult:
        enhanced = enhance_image_prompt(prompt, emotion)
        image = self._generate(enhanced)
        logger.info(f"Background image generated: {len(image)} bytes")
        return ImmediateResult(
            artifact=Artifact.inline(image, "image/png"),
            metadata={"model": self.model, "prompt": enhanced},
        )

    def generate_avatar_design(self, settings: dict) -> ImmediateResult:
        image = self._generate(build_avatar_prompt(settings))
        logger.info(f"Avatar design generated: {len(image)} bytes")
        return ImmediateResult(artifact=Artifact.inline(image, "image/png"), metadata={"model": self.model})
