"""
Avatar Studio scene workflow worker

  Engine    — durable step executor on Redis (replay, sleep, event waits)
  Adapters  — Gemini script/image, ElevenLabs TTS, D-ID avatar, Veo video
  Workflows — document → script → scenes → per-scene stages → composition
  HTTP      — FastAPI actions, event ingestion, run inspection, D-ID webhook
"""

from .engine import StepContext, WorkflowEngine, WorkflowFunction
from .errors import NonRetriableError, WorkflowError
from .models import ProjectStatus, Stage, StageStatus

__all__ = [
    "StepContext",
    "WorkflowEngine",
    "WorkflowFunction",
    "NonRetriableError",
    "WorkflowError",
    "ProjectStatus",
    "Stage",
    "StageStatus",
]
