"""
Uniform contract shared by every external job adapter.

    submit(...) -> JobHandle | ImmediateResult
    poll(handle) -> PollResult

Synchronous providers (script, TTS, image) answer ``submit`` with an
ImmediateResult. Long-running providers (D-ID talks, Veo operations) answer
with a JobHandle that the polling loops feed back into ``poll``.

Response variants (remote URL vs inline bytes, GCS URI vs base64) are
resolved inside the adapter; callers only ever see an Artifact.
"""

from enum import Enum
from typing import Any, Literal, Optional
from pydantic import BaseModel, Field, model_validator


class Artifact(BaseModel):
    kind: Literal["bytes", "url"]
    content_type: str
    data: Optional[bytes] = None
    url: Optional[str] = None

    @model_validator(mode="after")
    def _check_payload(self):
        if self.kind == "bytes" and self.data is None:
            raise ValueError("bytes artifact requires data")
        if self.kind == "url" and not self.url:
            raise ValueError("url artifact requires url")
        return self

    @classmethod
    def inline(cls, data: bytes, content_type: str) -> "Artifact":
        return cls(kind="bytes", data=data, content_type=content_type)

    @classmethod
    def remote(cls, url: str, content_type: str) -> "Artifact":
        return cls(kind="url", url=url, content_type=content_type)


class JobHandle(BaseModel):
    provider: str
    external_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ImmediateResult(BaseModel):
    artifact: Optional[Artifact] = None
    payload: Any = None
    metadata: dict[str, Any] = Field(default_factory=dict)


class PollState(str, Enum):
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class PollResult(BaseModel):
    state: PollState
    artifact: Optional[Artifact] = None
    error: Optional[str] = None

    @classmethod
    def pending(cls) -> "PollResult":
        return cls(state=PollState.PENDING)

    @classmethod
    def succeeded(cls, artifact: Artifact) -> "PollResult":
        return cls(state=PollState.SUCCEEDED, artifact=artifact)

    @classmethod
    def failed(cls, error: str) -> "PollResult":
        return cls(state=PollState.FAILED, error=error or "Unknown provider error")
