"""
Collaborators handed to workflow handlers as ``ctx.deps``.
"""

import os
import logging
from dataclasses import dataclass
from typing import Any

from supabase import create_client

from .store import ProjectStore
from .storage import BlobStore
from .gemini import GeminiScriptWriter, GeminiImageGenerator
from .elevenlabs import ElevenLabsTTS
from .did import DIDAvatarRenderer
from .veo import VeoVideoRenderer

logger = logging.getLogger(__name__)

APP_URL = os.environ.get("APP_URL", "http://localhost:8000")
BACKGROUND_PRIORITY_POLICY = os.environ.get("BACKGROUND_PRIORITY_POLICY", "high")


@dataclass
class Services:
    store: ProjectStore
    storage: BlobStore
    script_writer: Any
    tts: Any
    avatar_renderer: Any
    image_generator: Any
    video_renderer: Any
    db: Any = None
    app_url: str = APP_URL
    background_priority_policy: str = BACKGROUND_PRIORITY_POLICY

    @property
    def did_webhook_url(self) -> str:
        return f"{self.app_url.rstrip('/')}/webhooks/did"


def build_services() -> Services:
    """Wire the production collaborators from environment configuration."""
    url = os.environ.get("SUPABASE_URL")
    key = os.environ.get("SUPABASE_SERVICE_ROLE_KEY")
    if not url or not key:
        raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY must be set")
    client = create_client(url, key)

    return Services(
        store=ProjectStore(client),
        storage=BlobStore(client),
        script_writer=GeminiScriptWriter(),
        tts=ElevenLabsTTS(),
        avatar_renderer=DIDAvatarRenderer(),
        image_generator=GeminiImageGenerator(),
        video_renderer=VeoVideoRenderer(),
        db=client,
    )
