"""Shared fixtures: in-memory S3, scripted Gemini client, recorded sleeps"""

import os
import sys
from pathlib import Path
from types import SimpleNamespace

import pytest

os.environ.setdefault("LOG_TO_FILE", "false")
sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from gemini_client import ImageGenerator  # noqa: E402
from generation import GenerationService  # noqa: E402
from payload_store import PayloadStore  # noqa: E402
from storage import ObjectStorage  # noqa: E402

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"fake-png-body"
PUBLIC_BASE = "https://images.example.test"


class FakeS3Client:
    def __init__(self, error=None):
        self.error = error
        self.calls = []

    def put_object(self, **kwargs):
        if self.error is not None:
            raise self.error
        self.calls.append(kwargs)


class FakeModels:
    """Replays scripted outcomes; the last one repeats once the script runs out."""

    def __init__(self, outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def generate_content(self, model, contents, config=None):
        self.calls.append({"model": model, "contents": contents})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeGenaiClient:
    def __init__(self, outcomes):
        self.models = FakeModels(outcomes)
        self.aio = SimpleNamespace(models=self.models)


class SleepRecorder:
    def __init__(self):
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)


def image_response(data=PNG_BYTES, mime_type="image/png"):
    part = SimpleNamespace(text=None, inline_data=SimpleNamespace(data=data, mime_type=mime_type))
    content = SimpleNamespace(parts=[part])
    return SimpleNamespace(candidates=[SimpleNamespace(content=content, finish_reason="STOP")])


def text_only_response(text="I cannot draw that"):
    part = SimpleNamespace(text=text, inline_data=None)
    content = SimpleNamespace(parts=[part])
    return SimpleNamespace(candidates=[SimpleNamespace(content=content, finish_reason="STOP")])


def empty_response():
    return SimpleNamespace(candidates=[])


@pytest.fixture
def fake_s3():
    return FakeS3Client()


@pytest.fixture
def storage(fake_s3):
    return ObjectStorage("test-bucket", PUBLIC_BASE, client=fake_s3)


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def make_service(storage, sleeper):
    """Build a GenerationService whose Gemini client replays `outcomes`."""

    def factory(*outcomes):
        client = FakeGenaiClient(outcomes or [image_response()])
        generator = ImageGenerator(api_key="test-key", model="test-image-model", client=client)
        service = GenerationService(
            generator,
            storage,
            max_attempts=3,
            base_delay_ms=1000,
            batch_step_ms=500,
            sleep=sleeper,
        )
        return service, client.models

    return factory


@pytest.fixture
def payload_store(tmp_path):
    return PayloadStore(str(tmp_path / "payloads.db"), namespace="test")
