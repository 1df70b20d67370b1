import fakeredis
import pytest

from avatar_studio import metrics
from avatar_studio.engine import WorkflowEngine
from avatar_studio.services import Services
from avatar_studio.storage import BlobStore
from avatar_studio.store import ProjectStore
from avatar_studio.workflows import build_functions

from .fakes import (
    FakeImageGenerator,
    FakeScriptWriter,
    FakeSupabase,
    FakeTTS,
    fake_avatar_renderer,
    fake_video_renderer,
)
from .helpers import FakeClock


# ── Fixtures ─────────────────────────────────────────────────────────────────

@pytest.fixture(autouse=True)
def _reset_metrics():
    metrics.reset()
    yield
    metrics.reset()


@pytest.fixture(autouse=True)
def _no_network_downloads(monkeypatch):
    monkeypatch.setattr("avatar_studio.storage.download_url", lambda url: b"remote:" + url.encode())


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def db():
    return FakeSupabase()


@pytest.fixture
def services(db):
    return Services(
        store=ProjectStore(db),
        storage=BlobStore(db),
        script_writer=FakeScriptWriter(),
        tts=FakeTTS(),
        avatar_renderer=fake_avatar_renderer(),
        image_generator=FakeImageGenerator(),
        video_renderer=fake_video_renderer(),
        db=db,
        app_url="https://worker.test",
    )


@pytest.fixture
def engine(redis_client, services, clock):
    return WorkflowEngine(redis_client, build_functions(), deps=services, clock=clock)
