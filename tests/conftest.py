"""Shared fixtures: isolated settings and scripted in-process engines."""

import pytest
from fakes import FakeEngine, SoftFakeEngine

from lai_runtime.core import VLMInference
from lai_runtime.engines import PlatformDispatcher
from lai_runtime.utils.config import Settings


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        MODELS_DIR=str(tmp_path / ".laiModels"),
        MODEL_FILE_NAME="test-model.gguf",
        MODEL_URL="https://models.example.test/test-model.gguf",
        GENERATION_TIMEOUT_SECONDS=5.0,
    )


@pytest.fixture
def model_file(settings):
    settings.models_dir.mkdir(parents=True, exist_ok=True)
    settings.model_path.write_bytes(b"GGUF" + b"\0" * 60)
    return settings.model_path


def _dispatcher(settings, engine_cls):
    dispatcher = PlatformDispatcher(settings, engines={engine_cls.name: engine_cls})
    dispatcher.resolve()
    return dispatcher


@pytest.fixture
def hard_dispatcher(settings):
    dispatcher = _dispatcher(settings, FakeEngine)
    yield dispatcher
    dispatcher.resolved.release()


@pytest.fixture
def soft_dispatcher(settings):
    dispatcher = _dispatcher(settings, SoftFakeEngine)
    yield dispatcher
    dispatcher.resolved.release()


@pytest.fixture
def hard_engine(hard_dispatcher):
    return hard_dispatcher.resolved


@pytest.fixture
def soft_engine(soft_dispatcher):
    return soft_dispatcher.resolved


@pytest.fixture
def inference(settings, hard_dispatcher, model_file):
    return VLMInference(settings, dispatcher=hard_dispatcher)


@pytest.fixture
def soft_inference(settings, soft_dispatcher, model_file):
    return VLMInference(settings, dispatcher=soft_dispatcher)
