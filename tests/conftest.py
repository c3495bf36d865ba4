"""Pytest configuration and fixtures."""

import os
from collections.abc import Callable

import httpx
import pytest

# Set before app modules are imported so the cached settings see them
os.environ["LLM_API_KEY"] = "test-llm-key"
os.environ["PLAN_ENGINE_ENV"] = "test"

from app.core.config import Settings, get_settings  # noqa: E402
from app.core.llm_gateway import LLMGateway  # noqa: E402
from app.core.metrics import MetricsRecorder  # noqa: E402
from app.core.retry import RetryExecutor  # noqa: E402
from tests.fakes.fake_llm import no_sleep  # noqa: E402


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["LLM_API_KEY"] = "test-llm-key"
    os.environ["PLAN_ENGINE_ENV"] = "test"
    get_settings.cache_clear()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        LLM_API_KEY="test-llm-key",
        PLAN_ENGINE_ENV="test",
        RETRY_BASE_DELAY_SECONDS=0.01,
        CHUNK_BASE_DELAY_SECONDS=0.01,
    )


@pytest.fixture
def make_gateway(test_settings) -> Callable[..., LLMGateway]:
    """Build a gateway whose HTTP calls go to ``handler`` and whose retries never sleep."""

    def factory(handler, settings: Settings | None = None) -> LLMGateway:
        return LLMGateway(
            settings=settings or test_settings,
            executor=RetryExecutor(metrics=MetricsRecorder(), sleep=no_sleep),
            transport=httpx.MockTransport(handler),
        )

    return factory
