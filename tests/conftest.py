"""
Pytest configuration and fixtures for AIMS Design Backend tests.
"""

import os
import shutil
import tempfile
import threading

import pytest
from fastapi.testclient import TestClient

# Set test environment variables before importing the app
os.environ.pop("REDIS_URL", None)
os.environ.pop("PSD_CONFIG_PATH", None)
os.environ["ARTIFACT_BACKEND"] = "local"
os.environ["ARTIFACT_DIR"] = tempfile.mkdtemp(prefix="aims_test_artifacts_")

from aims_design_backend.artifacts import LocalArtifactStore
from aims_design_backend.job_manager import JobManager, JobSettings
from aims_design_backend.main import app, get_job_manager
from aims_design_backend.models import GenerationRequest
from aims_design_backend.stores import MemoryLockStore, MemoryTaskStatusStore


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGenerator:
    """Stand-in generation engine that records calls and replays progress steps."""

    def __init__(self, steps=((10, "drawing"), (50, "rendering"), (90, "saving")), data=b"8BPS fake psd", error=None, gate=None):
        self.steps = steps
        self.data = data
        self.error = error
        self.gate = gate
        self.calls = 0
        self._lock = threading.Lock()

    def generate(self, request, on_progress):
        with self._lock:
            self.calls += 1
        if self.gate is not None:
            self.gate.wait(timeout=5)
        for percent, message in self.steps:
            on_progress(percent, message)
        if self.error is not None:
            raise self.error
        return self.data


class RecordingStatusStore(MemoryTaskStatusStore):
    """Memory status store that keeps every record written to it."""

    def __init__(self):
        super().__init__()
        self.puts = []
        self._puts_lock = threading.Lock()

    def put(self, task_id, record, ttl):
        with self._puts_lock:
            self.puts.append(record.model_copy())
        super().put(task_id, record, ttl)


@pytest.fixture(scope="session", autouse=True)
def test_dirs():
    """Cleanup the artifact directory used by the module-level app."""
    artifact_dir = os.environ["ARTIFACT_DIR"]
    yield {"artifacts": artifact_dir}
    shutil.rmtree(artifact_dir, ignore_errors=True)


@pytest.fixture
def sample_payload():
    """A valid generation request body."""
    return {
        "project_name": "Joint Relief Cream",
        "specifications": {
            "dimensions": {
                "length": 12,
                "width": 4,
                "height": 16.5,
                "bleed_left_right": 0.3,
                "bleed_top_bottom": 0.3,
                "inner_bleed": 0.1,
            },
            "print_config": {"dpi": 72, "color_mode": "rgb"},
        },
        "assets": {
            "texts": {
                "main_panel": {
                    "brand_name": "LANISKA",
                    "product_name": "Joint Relief Cream",
                    "capacity_info": "50g",
                    "selling_points": ["Fast absorbing", "Fragrance free"],
                },
                "info_panel": {
                    "ingredients": "Water, Glycerin, Menthol",
                    "warnings": "For external use only.",
                },
            },
            "images": {"barcode": {"url": "https://example.com/barcode.pdf"}},
        },
    }


@pytest.fixture
def sample_request(sample_payload):
    return GenerationRequest.model_validate(sample_payload)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def status_store():
    return RecordingStatusStore()


@pytest.fixture
def lock_store():
    return MemoryLockStore()


@pytest.fixture
def artifact_store(tmp_path):
    return LocalArtifactStore(tmp_path / "artifacts")


@pytest.fixture
def job_settings():
    return JobSettings(max_workers=4, progress_interval=0.0)


@pytest.fixture
def manager(lock_store, status_store, artifact_store, generator, job_settings):
    """A job manager wired to in-process stores and a fake engine."""
    job_manager = JobManager(
        lock_store=lock_store,
        status_store=status_store,
        artifact_store=artifact_store,
        generator=generator,
        settings=job_settings,
    )
    yield job_manager
    job_manager.shutdown(wait=True)


@pytest.fixture
def client(manager):
    """Create a test client for the FastAPI app bound to the test manager."""
    app.dependency_overrides[get_job_manager] = lambda: manager
    yield TestClient(app)
    app.dependency_overrides.clear()
