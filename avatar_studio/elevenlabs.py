"""
ElevenLabs text-to-speech. Synchronous: returns MP3 bytes and an estimated duration.
"""

import os
import math
import logging
from typing import Optional

from .http_client import request_with_backoff
from .jobs import Artifact, ImmediateResult

logger = logging.getLogger(__name__)

ELEVEN_API_KEY = os.environ.get("ELEVEN_API_KEY", "")
ELEVEN_MODEL_ID = os.environ.get("ELEVEN_MODEL_ID", "eleven_multilingual_v2")
ELEVEN_DEFAULT_VOICE_ID = os.environ.get("ELEVEN_DEFAULT_VOICE_ID", "21m00Tcm4TlvDq8ikWAM")
ELEVEN_API_BASE = "https://api.elevenlabs.io/v1"

VOICE_SETTINGS = {
    "stability": 0.5,
    "similarity_boost": 0.75,
    "style": 0,
    "use_speaker_boost": True,
}
CHARS_PER_SECOND = 15


def estimate_duration(text: str) -> int:
    """Rough speech length in whole seconds."""
    return math.ceil(len(text) / CHARS_PER_SECOND)


class ElevenLabsTTS:
    provider = "elevenlabs"

    def __init__(
        self,
        api_key: str = ELEVEN_API_KEY,
        model_id: str = ELEVEN_MODEL_ID,
        default_voice_id: str = ELEVEN_DEFAULT_VOICE_ID,
    ):
        self.api_key = api_key
        self.model_id = model_id
        self.default_voice_id = default_voice_id

    def submit(self, text: str, voice_id: Optional[str] = None) -> ImmediateResult:
        voice = voice_id or self.default_voice_id
        resp = request_with_backoff(
            "POST", f"{ELEVEN_API_BASE}/text-to-speech/{voice}",
            provider=self.provider,
            headers={"xi-api-key": self.api_key, "Content-Type": "application/json", "Accept": "audio/mpeg"},
            json={"text": text, "model_id": self.model_id, "voice_settings": VOICE_SETTINGS},
        )
        duration = estimate_duration(text)
        logger.info(f"TTS generated: {len(resp.content)} bytes, ~{duration}s (voice={voice})")
        return ImmediateResult(
            artifact=Artifact.inline(resp.content, "audio/mpeg"),
            metadata={"duration_seconds": duration, "voice_id": voice, "model_id": self.model_id},
        )
