import os
import tempfile
import threading
import time
from collections import Counter
from datetime import datetime, timedelta
import pytest
from pydantic import BaseModel
from clipqueue.collaborators import Services
from clipqueue.config import Settings
from clipqueue.errors import PermanentJobError, TransientJobError
from clipqueue.handlers.base import JobHandler
from clipqueue.handlers.registry import HandlerRegistry
from clipqueue.models.media import (
    Highlight, RenderedClip, SubtitleSegment, Transcript, TranscriptSegment,
)
from clipqueue.queue import ClipQueue
from clipqueue.storage.database import Storage
from clipqueue.workers.dispatcher import Dispatcher


class FakeClock:
    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0)):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


# Collaborator fakes

class FakeMedia:
    def __init__(self):
        self.downloads = []
        self.renders = []
        self.fail_render = None

    def download(self, url, dest_dir):
        path = os.path.join(dest_dir, "source.mp4")
        with open(path, "wb") as f:
            f.write(b"source-video")
        self.downloads.append(url)
        return path

    def render_clip(self, source, output_path, options):
        if self.fail_render:
            raise self.fail_render
        self.renders.append((source, options))
        return RenderedClip(
            video_data=b"clip-video",
            thumbnail_data=b"clip-thumb",
            metadata={"resolution": "1080x1920"},
        )


class FakeTranscripts:
    def __init__(self, highlight_count=5):
        self.highlight_count = highlight_count
        self.requests = []

    def transcribe(self, source, start=None, end=None, language=None):
        self.requests.append((source, start, end, language))
        return Transcript(
            text="hello there general kenobi",
            duration=600.0,
            language=language,
            segments=[
                TranscriptSegment(text="hello there", start_time=0.0, end_time=1.5),
                TranscriptSegment(text="general kenobi", start_time=1.5, end_time=3.0),
            ],
        )

    def find_highlights(self, transcript, title):
        return [
            Highlight(
                start_time=i * 60.5,
                end_time=i * 60.5 + 30.7,
                suggested_title=f"{title} #{i + 1}",
                platform="tiktok",
                ai_score=0.9 - i * 0.1,
            )
            for i in range(self.highlight_count)
        ]

    def style_subtitles(self, transcript, style):
        return [
            SubtitleSegment(text=s.text.upper() if style.get("uppercase") else s.text,
                            start_time=s.start_time, end_time=s.end_time)
            for s in transcript.segments
        ]


class FakeObjectStorage:
    def __init__(self):
        self.objects = {}

    def upload(self, key, data, content_type):
        self.objects[key] = (data, content_type)
        return f"https://cdn.test/{key}"


class FakeRecords:
    def __init__(self):
        self.projects = {}
        self.clips = {}
        self.subtitles = {}

    def create_project(self, owner, title, description, source_video_url, duration):
        project_id = f"project-{len(self.projects) + 1}"
        self.projects[project_id] = {
            "owner": owner, "title": title, "description": description,
            "source_video_url": source_video_url, "duration": duration,
        }
        return project_id

    def create_clip(self, project_id, title, start_time, end_time, platform, ai_score):
        clip_id = f"clip-{len(self.clips) + 1}"
        self.clips[clip_id] = {
            "project_id": project_id, "title": title, "start_time": start_time,
            "end_time": end_time, "platform": platform, "ai_score": ai_score,
            "status": "processing",
        }
        return clip_id

    def update_clip(self, clip_id, **fields):
        self.clips[clip_id].update(fields)

    def replace_subtitles(self, clip_id, segments):
        self.subtitles[clip_id] = list(segments)


# Test handlers

class FlakyPayload(BaseModel):
    failures: int = 0
    permanent: bool = False


class FlakyHandler(JobHandler):
    """Fails the first ``failures`` attempts of each job, then succeeds."""

    job_type = "flaky"
    payload_model = FlakyPayload

    def __init__(self):
        self.attempts = Counter()

    def execute(self, job, payload, context):
        self.attempts[job.id] += 1
        attempt = self.attempts[job.id]
        context.stage(50, "halfway")
        if attempt <= payload.failures:
            error = PermanentJobError if payload.permanent else TransientJobError
            raise error(f"attempt {attempt} failed")
        context.stage(100, "done")


class SleepPayload(BaseModel):
    seconds: float = 0.05


class SleepHandler(JobHandler):
    """Sleeps in a few stages and records peak concurrency."""

    job_type = "sleep"
    payload_model = SleepPayload

    def __init__(self):
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0
        self.order = []

    def execute(self, job, payload, context):
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
            self.order.append(job.id)
        try:
            for progress in (25, 50, 75):
                time.sleep(payload.seconds / 3)
                context.stage(progress, f"slept to {progress}%")
        finally:
            with self._lock:
                self.active -= 1


class GatedPayload(BaseModel):
    label: str = "gated"


class GatedHandler(JobHandler):
    """Pauses mid-run until the test releases it."""

    job_type = "gated"
    payload_model = GatedPayload

    def __init__(self, stage_after_release=True):
        self.stage_after_release = stage_after_release
        self.reached = threading.Event()
        self.release = threading.Event()
        self.finished = threading.Event()

    def execute(self, job, payload, context):
        try:
            context.stage(30, "waiting at the gate")
            self.reached.set()
            self.release.wait(5)
            if self.stage_after_release:
                context.stage(60, "through the gate")
            return "done"
        finally:
            self.finished.set()


# Fixtures

@pytest.fixture
def temp_db():
    with tempfile.NamedTemporaryFile(suffix='.db', delete=False) as f:
        db_path = f.name
    yield db_path
    try:
        os.unlink(db_path)
    except PermissionError:
        pass  # File might still be locked, will be cleaned up later


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def storage(temp_db, clock):
    store = Storage(temp_db, clock=clock)
    yield store
    store.close()


@pytest.fixture
def live_storage(temp_db):
    store = Storage(temp_db)
    yield store
    store.close()


@pytest.fixture
def services():
    return Services(
        media=FakeMedia(),
        transcripts=FakeTranscripts(),
        storage=FakeObjectStorage(),
        records=FakeRecords(),
    )


@pytest.fixture
def settings(temp_db, tmp_path):
    return Settings(
        db_path=temp_db,
        media_dir=str(tmp_path / "media"),
        max_concurrent_jobs=2,
        poll_interval=0.01,
        idle_interval=0.01,
    )


@pytest.fixture
def flaky():
    return FlakyHandler()


@pytest.fixture
def registry(flaky):
    registry = HandlerRegistry.default()
    registry.register(flaky)
    return registry


@pytest.fixture
def queue(storage, registry, services, settings):
    q = ClipQueue(storage, registry=registry, services=services, settings=settings)
    yield q
    q.stop(wait=False, timeout=0)


@pytest.fixture
def dispatcher(queue):
    return queue.dispatcher


def drain(dispatcher: Dispatcher, limit: int = 100) -> int:
    """Claim and run jobs on the calling thread until none are left."""
    runs = 0
    while runs < limit:
        job = dispatcher.storage.claim_next()
        if job is None:
            return runs
        dispatcher.process_job(job)
        runs += 1
    raise AssertionError("queue did not drain")


def wait_for(predicate, timeout=10.0, interval=0.01):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()
