"""In-memory stand-ins for Supabase and the AI providers."""

import copy
import itertools
from dataclasses import dataclass, field
from typing import Any, Optional

from avatar_studio.jobs import Artifact, ImmediateResult, JobHandle, PollResult
from avatar_studio.models import scene_count_for


# ── Supabase tables ──────────────────────────────────────────────────────────

@dataclass
class FakeResponse:
    data: Any


class FakeQuery:
    def __init__(self, db: "FakeSupabase", table: str):
        self.db = db
        self.table = table
        self.op = "select"
        self.columns = "*"
        self.payload: Any = None
        self.filters: list = []
        self.order_by: Optional[tuple] = None
        self.limit_n: Optional[int] = None
        self.on_conflict: Optional[str] = None
        self.ignore_duplicates = False

    # builders
    def select(self, columns: str = "*"):
        self.op = "select"
        self.columns = columns
        return self

    def insert(self, payload):
        self.op = "insert"
        self.payload = payload
        return self

    def update(self, payload: dict):
        self.op = "update"
        self.payload = payload
        return self

    def upsert(self, payload, on_conflict: str = "id", ignore_duplicates: bool = False):
        self.op = "upsert"
        self.payload = payload
        self.on_conflict = on_conflict
        self.ignore_duplicates = ignore_duplicates
        return self

    def eq(self, column: str, value):
        self.filters.append(lambda row: row.get(column) == value)
        return self

    def in_(self, column: str, values):
        values = list(values)
        self.filters.append(lambda row: row.get(column) in values)
        return self

    def order(self, column: str, desc: bool = False):
        self.order_by = (column, desc)
        return self

    def limit(self, n: int):
        self.limit_n = n
        return self

    # execution
    def _rows(self) -> list:
        return self.db.tables.setdefault(self.table, [])

    def _matching(self) -> list:
        return [row for row in self._rows() if all(f(row) for f in self.filters)]

    def _project(self, row: dict) -> dict:
        if self.columns == "*":
            return copy.deepcopy(row)
        return {c.strip(): copy.deepcopy(row.get(c.strip())) for c in self.columns.split(",")}

    def _insert_one(self, row: dict) -> dict:
        row = copy.deepcopy(row)
        row.setdefault("id", f"{self.table}-{next(self.db.ids)}")
        row.setdefault("created_at", f"2026-01-01T00:00:{next(self.db.ticks):06d}")
        self._rows().append(row)
        return copy.deepcopy(row)

    def execute(self) -> FakeResponse:
        self.db.calls.append((self.table, self.op))
        if self.op == "select":
            rows = self._matching()
            if self.order_by:
                column, desc = self.order_by
                rows = sorted(rows, key=lambda r: (r.get(column) is None, r.get(column)), reverse=desc)
            if self.limit_n is not None:
                rows = rows[: self.limit_n]
            return FakeResponse([self._project(r) for r in rows])

        if self.op == "insert":
            payload = self.payload if isinstance(self.payload, list) else [self.payload]
            return FakeResponse([self._insert_one(r) for r in payload])

        if self.op == "update":
            updated = []
            for row in self._matching():
                row.update(copy.deepcopy(self.payload))
                updated.append(copy.deepcopy(row))
            return FakeResponse(updated)

        # upsert
        keys = [k.strip() for k in self.on_conflict.split(",")]
        payload = self.payload if isinstance(self.payload, list) else [self.payload]
        out = []
        for new in payload:
            existing = next(
                (r for r in self._rows() if all(r.get(k) == new.get(k) for k in keys)), None,
            )
            if existing is None:
                out.append(self._insert_one(new))
            elif not self.ignore_duplicates:
                existing.update(copy.deepcopy(new))
                out.append(copy.deepcopy(existing))
        return FakeResponse(out)


# ── Supabase storage ─────────────────────────────────────────────────────────

class FakeBucket:
    def __init__(self, db: "FakeSupabase", name: str):
        self.db = db
        self.name = name

    def upload(self, path: str, file: bytes, file_options: Optional[dict] = None):
        self.db.files[(self.name, path)] = file
        return {"path": path}

    def download(self, path: str) -> bytes:
        return self.db.files[(self.name, path)]

    def get_public_url(self, path: str) -> str:
        return f"https://storage.test/{self.name}/{path}"


class FakeStorage:
    def __init__(self, db: "FakeSupabase"):
        self.db = db

    def from_(self, bucket: str) -> FakeBucket:
        return FakeBucket(self.db, bucket)


class FakeSupabase:
    """Just enough of the supabase-py client for ProjectStore, BlobStore and permissions."""

    def __init__(self):
        self.tables: dict[str, list] = {}
        self.files: dict[tuple, bytes] = {}
        self.calls: list = []
        self.ids = itertools.count(1)
        self.ticks = itertools.count(1)
        self.storage = FakeStorage(self)

    def table(self, name: str) -> FakeQuery:
        return FakeQuery(self, name)

    def rows(self, table: str, **filters) -> list:
        return [
            r for r in self.tables.get(table, [])
            if all(r.get(k) == v for k, v in filters.items())
        ]

    def row(self, table: str, row_id: str) -> dict:
        return self.rows(table, id=row_id)[0]


# ── Providers ────────────────────────────────────────────────────────────────

def make_script(duration: int) -> dict:
    count = scene_count_for(duration)
    return {"scenes": [
        {
            "sceneNumber": i + 1,
            "script": f"Revenue grew in quarter {i + 1}.",
            "visualDescription": f"Chart {i + 1}",
            "imagePrompt": f"A rising chart, panel {i + 1}",
            "videoPrompt": "Slow camera push",
            "priority": "medium",
            "emotion": "professional",
        }
        for i in range(count)
    ]}


@dataclass
class FakeScriptWriter:
    provider: str = "gemini"
    scripts: list = field(default_factory=list)
    calls: int = 0

    def submit(self, pdf_bytes: bytes, duration: int, char_budget: int = 45) -> ImmediateResult:
        self.calls += 1
        payload = self.scripts.pop(0) if self.scripts else make_script(duration)
        return ImmediateResult(payload=payload, metadata={"model": "fake-pro"})

    def summarize(self, text: str, max_chars: int) -> str:
        return text[:max_chars]


@dataclass
class FakeTTS:
    provider: str = "elevenlabs"
    calls: list = field(default_factory=list)
    error: Optional[Exception] = None

    def submit(self, text: str, voice_id: Optional[str] = None) -> ImmediateResult:
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return ImmediateResult(
            artifact=Artifact.inline(b"ID3-fake-mp3", "audio/mpeg"),
            metadata={"duration_seconds": 3},
        )


class FakeLongRunning:
    """Submit returns a handle; poll answers pending ``pending_polls`` times, then the outcome."""

    def __init__(self, provider: str, pending_polls: int = 0, fail_with: Optional[str] = None,
                 result: Optional[Artifact] = None):
        self.provider = provider
        self.pending_polls = pending_polls
        self.fail_with = fail_with
        self.result = result
        self.submitted: list = []
        self.polls: dict[str, int] = {}

    def submit(self, *args, **kwargs) -> JobHandle:
        external_id = f"{self.provider}-job-{len(self.submitted) + 1}"
        self.submitted.append((external_id, args))
        return JobHandle(provider=self.provider, external_id=external_id)

    def poll(self, handle: JobHandle) -> PollResult:
        count = self.polls.get(handle.external_id, 0) + 1
        self.polls[handle.external_id] = count
        if count <= self.pending_polls:
            return PollResult.pending()
        if self.fail_with:
            return PollResult.failed(self.fail_with)
        return PollResult.succeeded(self.result)

    @property
    def total_polls(self) -> int:
        return sum(self.polls.values())


def fake_avatar_renderer(**kwargs) -> FakeLongRunning:
    return FakeLongRunning(
        "did", result=Artifact.remote("https://d-id.test/talks/result.mp4", "video/mp4"), **kwargs,
    )


def fake_video_renderer(**kwargs) -> FakeLongRunning:
    return FakeLongRunning("veo", result=Artifact.inline(b"fake-veo-mp4", "video/mp4"), **kwargs)


@dataclass
class FakeImageGenerator:
    provider: str = "gemini-image"
    prompts: list = field(default_factory=list)
    design_error: Optional[Exception] = None
    design_calls: int = 0

    def submit(self, prompt: str, emotion: Optional[str] = None) -> ImmediateResult:
        self.prompts.append(prompt)
        return ImmediateResult(artifact=Artifact.inline(b"\x89PNG-fake", "image/png"),
                               metadata={"model": "fake-image"})

    def generate_avatar_design(self, settings: dict) -> ImmediateResult:
        self.design_calls += 1
        if self.design_error is not None:
            raise self.design_error
        return ImmediateResult(artifact=Artifact.inline(b"\x89PNG-avatar", "image/png"),
                               metadata={"model": "fake-image"})
