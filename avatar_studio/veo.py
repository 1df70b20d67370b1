"""
Veo image-to-video through Vertex AI long-running operations.

``submit`` calls predictLongRunning and returns the operation name,
``poll`` calls fetchPredictOperation. A finished operation carries its video
either as a GCS URI or inline as base64; both are resolved to bytes here.
"""

import os
import re
import base64
import logging
from typing import Optional
from urllib.parse import quote

import httpx
import google.auth
from google.auth.transport.requests import Request as GoogleAuthRequest

from .errors import PermanentProviderError, TransientProviderError
from .http_client import request_with_backoff
from .jobs import Artifact, JobHandle, PollResult

logger = logging.getLogger(__name__)

GOOGLE_CLOUD_PROJECT = os.environ.get("GOOGLE_CLOUD_PROJECT", "")
GOOGLE_CLOUD_LOCATION = os.environ.get("GOOGLE_CLOUD_LOCATION", "us-central1")
VEO_MODEL = os.environ.get("VEO_MODEL", "veo-3.0-fast-generate-001")
CLOUD_PLATFORM_SCOPE = "https://www.googleapis.com/auth/cloud-platform"
GCS_DOWNLOAD_TIMEOUT = 120

_GCS_URI = re.compile(r"^gs://([^/]+)/(.+)$")
_OPERATION_LOCATION = re.compile(r"/locations/([^/]+)/")

CINEMATIC_STYLES = {
    "professional": {
        "camera": "Steady tracking shot with subtle horizontal pan",
        "motion": "Smooth, measured camera movement with gentle transitions",
        "lighting": "balanced ambient lighting with soft natural tones",
        "pacing": "deliberate and purposeful progression",
    },
    "energetic": {
        "camera": "Dynamic drone shot with sweeping movement and varied perspectives",
        "motion": "Energetic camera work with fluid transitions",
        "lighting": "vibrant illumination with warm highlights",
        "pacing": "brisk progression with rapid visual interest",
    },
    "calm": {
        "camera": "Slow dolly movement with gentle drift",
        "motion": "Serene, unhurried camera motion",
        "lighting": "soft ambient glow with tranquil color temperature",
        "pacing": "leisurely and calming progression",
    },
    "innovative": {
        "camera": "Creative camera angles with experimental movement",
        "motion": "Unconventional camera paths with artistic transitions",
        "lighting": "contemporary lighting design with sleek modern aesthetics",
        "pacing": "progressive visual development",
    },
    "neutral": {
        "camera": "Standard cinematic camera work with natural movement",
        "motion": "Balanced camera motion with organic transitions",
        "lighting": "natural lighting with realistic illumination",
        "pacing": "steady and natural progression",
    },
}

_VIDEO_CAMERA = re.compile(r"shot|camera|tracking|drone|pan|tilt|dolly|zoom|pov|angle", re.I)
_VIDEO_LIGHTING = re.compile(r"light|lighting|shadow|glow|bright|dark|golden|atmosphere", re.I)
_VIDEO_MOTION = re.compile(r"slow|smooth|gentle|dynamic|subtle|movement|motion|drift", re.I)


def enhance_video_prompt(raw_prompt: str, emotion: Optional[str] = "professional") -> str:
    if (
        len(raw_prompt) > 80
        and _VIDEO_CAMERA.search(raw_prompt)
        and _VIDEO_LIGHTING.search(raw_prompt)
        and _VIDEO_MOTION.search(raw_prompt)
    ):
        return raw_prompt

    style = CINEMATIC_STYLES.get((emotion or "").lower(), CINEMATIC_STYLES["neutral"])
    return (
        f"{raw_prompt.strip().rstrip('.')}. "
        f"{style['camera']}. {style['motion']}, with {style['lighting']} setting the tone. "
        f"The sequence unfolds over 8 seconds with {style['pacing']} and cinematic color grading."
    )


class VeoVideoRenderer:
    provider = "veo"

    def __init__(
        self,
        project_id: str = GOOGLE_CLOUD_PROJECT,
        location: str = GOOGLE_CLOUD_LOCATION,
        model: str = VEO_MODEL,
        credentials=None,
    ):
        self.project_id = project_id
        self.location = location
        self.model = model
        self._credentials = credentials

    # ── Auth ─────────────────────────────────────────────────────────────────

    def _access_token(self) -> str:
        if self._credentials is None:
            self._credentials, detected_project = google.auth.default(scopes=[CLOUD_PLATFORM_SCOPE])
            if not self.project_id:
                self.project_id = detected_project or ""
        if not self._credentials.valid:
            self._credentials.refresh(GoogleAuthRequest())
        return self._credentials.token

    def _headers(self) -> dict:
        return {"Authorization": f"Bearer {self._access_token()}", "Content-Type": "application/json"}

    def _model_url(self, location: str, method: str) -> str:
        return (
            f"https://{location}-aiplatform.googleapis.com/v1/projects/{self.project_id}"
            f"/locations/{location}/publishers/google/models/{self.model}:{method}"
        )

    # ── Submit / Poll ────────────────────────────────────────────────────────

    def submit(self, image_url: str, prompt: str, emotion: Optional[str] = None) -> JobHandle:
        try:
            image = httpx.get(image_url, follow_redirects=True, timeout=60)
            image.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientProviderError(self.provider, f"Failed to fetch source image: {e}") from e

        enhanced = enhance_video_prompt(prompt, emotion)
        headers = self._headers()
        resp = request_with_backoff(
            "POST", self._model_url(self.location, "predictLongRunning"),
            provider=self.provider, headers=headers,
            json={
                "instances": [{
                    "prompt": enhanced,
                    "image": {
                        "bytesBase64Encoded": base64.b64encode(image.content).decode(),
                        "mimeType": image.headers.get("content-type", "image/png").split(";")[0],
                    },
                }],
                "parameters": {"aspectRatio": "16:9", "resolution": "720p", "sampleCount": 1},
            },
        )
        operation = resp.json().get("name")
        if not operation:
            raise PermanentProviderError(self.provider, "No operation name in predictLongRunning response")

        logger.info(f"Veo operation started: {operation}")
        return JobHandle(provider=self.provider, external_id=operation, metadata={"prompt": enhanced})

    def poll(self, handle: JobHandle) -> PollResult:
        operation_name = handle.external_id
        match = _OPERATION_LOCATION.search(operation_name)
        location = match.group(1) if match else self.location

        resp = request_with_backoff(
            "POST", self._model_url(location, "fetchPredictOperation"),
            provider=self.provider, headers=self._headers(),
            json={"operationName": operation_name},
            passthrough_statuses=(400, 403, 404),
        )
        if resp.status_code == 404:
            # Eventual consistency: new operations are not always visible yet
            logger.info(f"Veo operation not yet visible: {operation_name}")
            return PollResult.pending()
        if not resp.ok:
            return PollResult.failed(f"Operation polling failed: HTTP {resp.status_code} {resp.text[:200]}")

        operation = resp.json()
        if not operation.get("done"):
            return PollResult.pending()
        if operation.get("error"):
            return PollResult.failed(operation["error"].get("message") or "Veo operation failed")

        videos = (operation.get("response") or {}).get("videos") or []
        if not videos:
            return PollResult.failed("No generated videos in operation response")

        video = videos[0]
        if video.get("gcsUri"):
            data = self._download_gcs(video["gcsUri"])
        elif video.get("bytesBase64Encoded"):
            data = base64.b64decode(video["bytesBase64Encoded"])
        else:
            return PollResult.failed("No gcsUri or bytesBase64Encoded in operation response")

        logger.info(f"Veo video ready: {len(data)} bytes ({operation_name})")
        return PollResult.succeeded(Artifact.inline(data, video.get("mimeType", "video/mp4")))

    def _download_gcs(self, gcs_uri: str) -> bytes:
        match = _GCS_URI.match(gcs_uri)
        if not match:
            raise PermanentProviderError(self.provider, f"Invalid GCS URI format: {gcs_uri}")
        bucket, path = match.groups()
        url = f"https://storage.googleapis.com/storage/v1/b/{bucket}/o/{quote(path, safe='')}"
        try:
            resp = httpx.get(url, params={"alt": "media"}, headers=self._headers(), timeout=GCS_DOWNLOAD_TIMEOUT)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise TransientProviderError(self.provider, f"GCS download failed for {gcs_uri}: {e}") from e
        return resp.content
