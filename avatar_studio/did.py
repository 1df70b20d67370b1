"""
D-ID talks API: talking-avatar video from a portrait image and an audio track.

Asynchronous: ``submit`` creates a talk and returns its id as a JobHandle,
``poll`` maps the talk status onto PollResult. D-ID also calls our webhook
on completion (see avatar_studio.webhooks).
"""

import os
import logging
from typing import Optional

from .http_client import request_with_backoff
from .jobs import Artifact, JobHandle, PollResult

logger = logging.getLogger(__name__)

DID_API_KEY = os.environ.get("DID_API_KEY", "")
DID_API_BASE = "https://api.d-id.com"
DID_PRESET_AVATAR_URL = os.environ.get(
    "DID_PRESET_AVATAR_URL",
    "https://create-images-results.d-id.com/default_presenter_image_url.webp",
)

PENDING_STATUSES = {"created", "started"}
FAILED_STATUSES = {"error", "rejected"}


def describe_error(error) -> str:
    """D-ID errors arrive as a string or as {kind, description}."""
    if isinstance(error, dict):
        return error.get("description") or error.get("kind") or str(error)
    return str(error) if error else "Unknown D-ID error"


class DIDAvatarRenderer:
    provider = "did"

    def __init__(self, api_key: str = DID_API_KEY, api_base: str = DID_API_BASE):
        self.api_key = api_key
        self.api_base = api_base

    def _headers(self) -> dict:
        return {
            "Authorization": f"Basic {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def submit(self, image_url: str, audio_url: str, webhook_url: Optional[str] = None) -> JobHandle:
        body = {
            "source_url": image_url,
            "script": {"type": "audio", "audio_url": audio_url},
            "config": {"stitch": True},
        }
        if webhook_url:
            body["webhook"] = webhook_url

        resp = request_with_backoff(
            "POST", f"{self.api_base}/talks", provider=self.provider,
            headers=self._headers(), json=body,
        )
        talk = resp.json()
        logger.info(f"D-ID talk created: {talk.get('id')} (status={talk.get('status')})")
        return JobHandle(provider=self.provider, external_id=talk["id"], metadata={"status": talk.get("status")})

    def poll(self, handle: JobHandle) -> PollResult:
        resp = request_with_backoff(
            "GET", f"{self.api_base}/talks/{handle.external_id}", provider=self.provider,
            headers=self._headers(), passthrough_statuses=(404,),
        )
        if resp.status_code == 404:
            # Freshly created talks can briefly 404
            return PollResult.pending()

        talk = resp.json()
        status = talk.get("status")
        if status in PENDING_STATUSES:
            return PollResult.pending()
        if status == "done":
            if not talk.get("result_url"):
                return PollResult.failed("D-ID talk finished without a result_url")
            return PollResult.succeeded(Artifact.remote(talk["result_url"], "video/mp4"))
        if status in FAILED_STATUSES:
            return PollResult.failed(describe_error(talk.get("error")))

        logger.warning(f"Unexpected D-ID status '{status}' for talk {handle.external_id}")
        return PollResult.pending()
