import json
import base64

import httpx
import pytest

from avatar_studio.did import DIDAvatarRenderer
from avatar_studio.elevenlabs import ElevenLabsTTS
from avatar_studio.errors import PermanentProviderError, TransientProviderError, is_quota_or_not_found
from avatar_studio.gemini import GeminiImageGenerator
from avatar_studio.http_client import MAX_RETRIES, request_with_backoff
from avatar_studio.jobs import JobHandle, PollState
from avatar_studio.veo import VeoVideoRenderer


class FakeHTTPResponse:
    def __init__(self, status_code=200, body=None, content=b"", headers=None):
        self.status_code = status_code
        self.body = body
        self.content = content
        self.headers = headers or {}

    @property
    def ok(self):
        return 200 <= self.status_code < 300

    @property
    def text(self):
        return json.dumps(self.body) if self.body is not None else self.content.decode()

    def json(self):
        if self.body is None:
            raise ValueError("no json body")
        return self.body


@pytest.fixture
def http(monkeypatch):
    """Queue of responses served to requests.request, plus the calls made."""
    state = {"responses": [], "calls": [], "sleeps": []}

    def fake_request(method, url, **kwargs):
        state["calls"].append((method, url, kwargs))
        return state["responses"].pop(0)

    monkeypatch.setattr("avatar_studio.http_client.requests.request", fake_request)
    monkeypatch.setattr("avatar_studio.http_client.time.sleep", state["sleeps"].append)
    return state


# ── Backoff ──────────────────────────────────────────────────────────────────

def test_retries_rate_limits_then_succeeds(http):
    http["responses"] = [
        FakeHTTPResponse(429, {"error": {"message": "slow down"}}, headers={"Retry-After": "3"}),
        FakeHTTPResponse(503, {"detail": "busy"}),
        FakeHTTPResponse(200, {"ok": True}),
    ]
    resp = request_with_backoff("GET", "https://api.test/x", provider="test")
    assert resp.json() == {"ok": True}
    assert http["sleeps"][0] == 3.0
    assert len(http["calls"]) == 3


def test_client_errors_are_permanent(http):
    http["responses"] = [FakeHTTPResponse(400, {"error": {"message": "bad voice", "status": "INVALID"}})]
    with pytest.raises(PermanentProviderError) as exc:
        request_with_backoff("POST", "https://api.test/x", provider="test")
    assert exc.value.status_code == 400
    assert "bad voice" in str(exc.value)
    assert http["sleeps"] == []


def test_exhausted_retries_are_transient(http):
    http["responses"] = [FakeHTTPResponse(500, {"detail": "down"}) for _ in range(MAX_RETRIES + 1)]
    with pytest.raises(TransientProviderError):
        request_with_backoff("GET", "https://api.test/x", provider="test")
    assert len(http["sleeps"]) == MAX_RETRIES


# ── D-ID ─────────────────────────────────────────────────────────────────────

def test_did_submit_sends_audio_script_and_webhook(http):
    http["responses"] = [FakeHTTPResponse(201, {"id": "tlk_1", "status": "created"})]
    handle = DIDAvatarRenderer(api_key="k").submit(
        "https://img.test/face.png", "https://audio.test/a.mp3", webhook_url="https://worker.test/webhooks/did",
    )
    assert handle.external_id == "tlk_1"
    method, url, kwargs = http["calls"][0]
    assert (method, url) == ("POST", "https://api.d-id.com/talks")
    assert kwargs["json"]["script"] == {"type": "audio", "audio_url": "https://audio.test/a.mp3"}
    assert kwargs["json"]["webhook"] == "https://worker.test/webhooks/did"


@pytest.mark.parametrize("response,state", [
    (FakeHTTPResponse(404, {"kind": "NotFound"}), PollState.PENDING),
    (FakeHTTPResponse(200, {"status": "started"}), PollState.PENDING),
    (FakeHTTPResponse(200, {"status": "done", "result_url": "https://d-id.test/r.mp4"}), PollState.SUCCEEDED),
    (FakeHTTPResponse(200, {"status": "done"}), PollState.FAILED),
    (FakeHTTPResponse(200, {"status": "error", "error": {"description": "No face"}}), PollState.FAILED),
])
def test_did_poll_states(http, response, state):
    http["responses"] = [response]
    result = DIDAvatarRenderer(api_key="k").poll(JobHandle(provider="did", external_id="tlk_1"))
    assert result.state == state


# ── ElevenLabs ───────────────────────────────────────────────────────────────

def test_elevenlabs_returns_inline_mp3(http):
    http["responses"] = [FakeHTTPResponse(200, content=b"ID3mp3")]
    result = ElevenLabsTTS(api_key="k").submit("Revenue grew.", voice_id="voice-1")

    assert result.artifact.data == b"ID3mp3"
    assert result.artifact.content_type == "audio/mpeg"
    assert result.metadata["voice_id"] == "voice-1"
    assert http["calls"][0][1].endswith("/text-to-speech/voice-1")


# ── Veo ──────────────────────────────────────────────────────────────────────

OPERATION = "projects/p/locations/europe-west4/publishers/google/models/veo/operations/op-1"


class FakeCredentials:
    valid = True
    token = "ya29.token"


@pytest.fixture
def veo():
    return VeoVideoRenderer(project_id="p", location="us-central1", credentials=FakeCredentials())


def poll_veo(veo):
    return veo.poll(JobHandle(provider="veo", external_id=OPERATION))


def test_veo_poll_targets_the_operation_region(http, veo):
    http["responses"] = [FakeHTTPResponse(200, {"done": False})]
    assert poll_veo(veo).state == PollState.PENDING

    method, url, kwargs = http["calls"][0]
    assert url.startswith("https://europe-west4-aiplatform.googleapis.com/")
    assert url.endswith(":fetchPredictOperation")
    assert kwargs["json"] == {"operationName": OPERATION}
    assert kwargs["headers"]["Authorization"] == "Bearer ya29.token"


def test_veo_operation_not_yet_visible_is_pending(http, veo):
    http["responses"] = [FakeHTTPResponse(404, {"error": {"code": 404, "message": "not found"}})]
    assert poll_veo(veo).state == PollState.PENDING
    assert http["sleeps"] == []


def test_veo_inline_video_is_decoded(http, veo):
    encoded = base64.b64encode(b"mp4-bytes").decode()
    http["responses"] = [FakeHTTPResponse(200, {
        "done": True, "response": {"videos": [{"bytesBase64Encoded": encoded, "mimeType": "video/mp4"}]},
    })]
    result = poll_veo(veo)
    assert result.state == PollState.SUCCEEDED
    assert result.artifact.data == b"mp4-bytes"
    assert result.artifact.content_type == "video/mp4"


def test_veo_gcs_video_is_downloaded(http, veo, monkeypatch):
    downloads = []

    class Download:
        content = b"gcs-mp4"

        def raise_for_status(self):
            pass

    def fake_get(url, **kwargs):
        downloads.append((url, kwargs))
        return Download()

    monkeypatch.setattr("avatar_studio.veo.httpx.get", fake_get)
    http["responses"] = [FakeHTTPResponse(200, {
        "done": True, "response": {"videos": [{"gcsUri": "gs://veo-out/runs/op 1/sample_0.mp4"}]},
    })]

    result = poll_veo(veo)

    assert result.artifact.data == b"gcs-mp4"
    (url, kwargs), = downloads
    assert url == "https://storage.googleapis.com/storage/v1/b/veo-out/o/runs%2Fop%201%2Fsample_0.mp4"
    assert kwargs["params"] == {"alt": "media"}


@pytest.mark.parametrize("response,error", [
    (FakeHTTPResponse(200, {"done": True, "error": {"code": 3, "message": "Image violates policy"}}),
     "Image violates policy"),
    (FakeHTTPResponse(200, {"done": True, "response": {"videos": []}}), "No generated videos"),
    (FakeHTTPResponse(200, {"done": True, "response": {"videos": [{"mimeType": "video/mp4"}]}}),
     "No gcsUri or bytesBase64Encoded"),
    (FakeHTTPResponse(403, {"error": {"message": "denied"}}), "HTTP 403"),
])
def test_veo_poll_failures(http, veo, response, error):
    http["responses"] = [response]
    result = poll_veo(veo)
    assert result.state == PollState.FAILED
    assert error in result.error


def test_veo_rejects_malformed_gcs_uri(http, veo):
    http["responses"] = [FakeHTTPResponse(200, {"done": True, "response": {"videos": [{"gcsUri": "s3://x/y"}]}})]
    with pytest.raises(PermanentProviderError):
        poll_veo(veo)


# ── Gemini image ─────────────────────────────────────────────────────────────

@pytest.fixture
def gemini_post(monkeypatch):
    """Queue of responses served to httpx.post inside the Gemini adapter."""
    state = {"responses": [], "calls": []}

    def fake_post(url, **kwargs):
        state["calls"].append((url, kwargs))
        return state["responses"].pop(0)

    monkeypatch.setattr("avatar_studio.gemini.httpx.post", fake_post)
    return state


def test_gemini_image_returns_inline_png(gemini_post):
    png = base64.b64encode(b"\x89PNG").decode()
    gemini_post["responses"] = [FakeHTTPResponse(200, {"candidates": [{
        "finishReason": "STOP",
        "content": {"parts": [{"inlineData": {"mimeType": "image/png", "data": png}}]},
    }]})]

    result = GeminiImageGenerator(api_key="k").submit("A modern office", emotion="calm")

    assert result.artifact.data == b"\x89PNG"
    assert result.artifact.content_type == "image/png"
    url, kwargs = gemini_post["calls"][0]
    assert url.endswith(":generateContent")
    assert kwargs["params"] == {"key": "k"}


def test_gemini_image_rate_limit_is_retryable(gemini_post):
    gemini_post["responses"] = [FakeHTTPResponse(429, {"error": {
        "code": 429, "status": "RESOURCE_EXHAUSTED", "message": "Resource has been exhausted",
    }})]

    with pytest.raises(TransientProviderError) as exc:
        GeminiImageGenerator(api_key="k").submit("A modern office")

    assert exc.value.status_code == 429
    # Avatar design still treats it as a reason to fall back to the preset
    assert is_quota_or_not_found(exc.value) == "Quota exceeded"


@pytest.mark.parametrize("response,error_cls,message", [
    (FakeHTTPResponse(503, {"error": {"message": "overloaded"}}), TransientProviderError, "HTTP 503"),
    (FakeHTTPResponse(400, {"error": {"status": "INVALID_ARGUMENT", "message": "bad"}}),
     PermanentProviderError, "HTTP 400"),
    (FakeHTTPResponse(200, {"candidates": [], "promptFeedback": {"blockReason": "SAFETY"}}),
     PermanentProviderError, "safety filter"),
    (FakeHTTPResponse(200, {"candidates": [{"finishReason": "IMAGE_SAFETY", "content": {"parts": []}}]}),
     PermanentProviderError, "IMAGE_SAFETY"),
    (FakeHTTPResponse(200, {"candidates": [{"content": {"parts": [{"text": "sorry"}]}}]}),
     PermanentProviderError, "No image data"),
])
def test_gemini_image_error_mapping(gemini_post, response, error_cls, message):
    gemini_post["responses"] = [response]
    with pytest.raises(error_cls) as exc:
        GeminiImageGenerator(api_key="k").submit("A modern office")
    assert message in str(exc.value)


def test_gemini_image_network_error_is_retryable(monkeypatch):
    def broken(url, **kwargs):
        raise httpx.ConnectError("connection refused")

    monkeypatch.setattr("avatar_studio.gemini.httpx.post", broken)
    with pytest.raises(TransientProviderError):
        GeminiImageGenerator(api_key="k").submit("A modern office")
