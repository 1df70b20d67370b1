"""
Exception hierarchy for the scene workflow worker.

Workflow code raises; the engine decides what happens next:
  - NonRetriableError (and subclasses) → run fails immediately, on_failure runs
  - any other Exception                → run is retried up to its budget
"""

from typing import Optional


class WorkflowError(Exception):
    """Base class for errors raised by workflow handlers."""


class NonRetriableError(WorkflowError):
    """Retrying the invocation cannot succeed. Fail the run now."""


class StepTimeoutError(NonRetriableError):
    """A stage-completion wait elapsed without a completion event."""

    def __init__(self, stage: str, scene_id: str, timeout_seconds: float):
        self.stage = stage
        self.scene_id = scene_id
        self.timeout_seconds = timeout_seconds
        super().__init__(
            f"Timed out after {int(timeout_seconds)}s waiting for {stage} "
            f"completion of scene {scene_id}"
        )


class StageFailedError(NonRetriableError):
    """A stage workflow reported a terminal failure for a scene."""

    def __init__(self, stage: str, scene_id: str, message: str):
        self.stage = stage
        self.scene_id = scene_id
        super().__init__(f"{stage} failed for scene {scene_id}: {message}")


class NotFoundError(NonRetriableError):
    """A required entity does not exist (or is soft-deleted)."""


class InvalidTransitionError(NonRetriableError):
    """A project status change that the state machine does not allow."""

    def __init__(self, project_id: str, current: str, target: str):
        self.project_id = project_id
        self.current = current
        self.target = target
        super().__init__(f"Project {project_id}: cannot move from '{current}' to '{target}'")


class SceneNotReadyError(WorkflowError):
    """Composition was requested while some scenes still have open stages.

    Retriable: the readiness check tolerates eventual consistency.
    """

    def __init__(self, project_id: str, incomplete: list[dict]):
        self.project_id = project_id
        self.incomplete = incomplete
        details = "; ".join(
            f"scene {item['scene_number']} ({item['scene_id']}): "
            + ", ".join(f"{stage}={status}" for stage, status in item["stages"].items())
            for item in incomplete
        )
        super().__init__(
            f"{len(incomplete)} scene(s) not ready for composition in project {project_id}: {details}"
        )


class ScriptValidationError(WorkflowError):
    """Generated script violates content rules. Lists every violating scene."""

    def __init__(self, violations: list[dict]):
        self.violations = violations
        lines = [
            f"scene {v['scene_number']}: {', '.join(v['reasons'])}"
            for v in violations
        ]
        super().__init__(
            f"Generated script rejected ({len(violations)} scene(s)): " + "; ".join(lines)
        )


# ── Provider errors ──────────────────────────────────────────────────────────

class ProviderError(WorkflowError):
    """An external AI provider call failed."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: Optional[int] = None,
        reason: Optional[str] = None,
    ):
        self.provider = provider
        self.status_code = status_code
        self.reason = reason
        super().__init__(f"{provider}: {message}")


class TransientProviderError(ProviderError):
    """Rate limit, 5xx, network blip. Safe to retry."""


class PermanentProviderError(ProviderError, NonRetriableError):
    """Quota exhausted, policy rejection, not found, malformed response."""


QUOTA_MARKERS = ("Quota exceeded", "RESOURCE_EXHAUSTED", "quota")
NOT_FOUND_MARKERS = ("not found", "NOT_FOUND")


def is_quota_or_not_found(error: BaseException) -> Optional[str]:
    """Classify errors that should degrade to a fallback instead of failing.

    Returns "Quota exceeded", "Model not found" or None.
    """
    status = getattr(error, "status_code", None)
    reason = getattr(error, "reason", None)
    message = str(error)

    if status == 404 or reason == "NOT_FOUND" or any(m in message for m in NOT_FOUND_MARKERS):
        return "Model not found"
    if status == 429 or reason == "RESOURCE_EXHAUSTED" or any(m in message for m in QUOTA_MARKERS):
        return "Quota exceeded"
    return None
