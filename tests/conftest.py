"""Pytest configuration and fixtures."""

import logging
import os
import tempfile

# must be set before server.api_server is imported (it configures logging on import)
os.environ.setdefault("ROOT_DIR", tempfile.mkdtemp(prefix="nexus-tests-"))
os.environ["TIMEZONE"] = "UTC"
os.environ["LLM_ENGINE"] = "Openai"
os.environ["LLM_OPENAI_API_KEY"] = "test-openai-key"
os.environ["REPO_ENGINE"] = "Memory"

import pytest
import pytest_asyncio

from services.usage_gate.UsageGate import UsageGate
from shared.clients.repo.memory.RepoClientMemory import RepoClientMemory
from shared.helper.HelperConfig import HelperConfig
from fakes.fake_clients import FakeClock, FakeLLMClient

# keys tests may override; cleared so a developer's shell cannot leak into a run
_ISOLATED_KEYS = (
    "APP_API_KEY",
    "USAGE_GATING_ENABLED",
    "MAX_CATEGORIES_PER_DOC",
    "REPO_MEMORY_PERSIST_PATH",
    "LLM_ALLOWED_MODELS",
    "LLM_CHAT_MODEL",
    "LLM_MODEL",
    "SSE_KEEPALIVE_SECONDS",
)


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch):
    for key in _ISOLATED_KEYS:
        monkeypatch.delenv(key, raising=False)
    for key in list(os.environ):
        if key.startswith(("PLAN_", "RAG_")):
            monkeypatch.delenv(key, raising=False)


@pytest.fixture
def helper_config() -> HelperConfig:
    return HelperConfig(logger=logging.getLogger("nexus-tests"))


@pytest_asyncio.fixture
async def repo(helper_config):
    client = RepoClientMemory(helper_config=helper_config)
    await client.boot()
    yield client
    await client.close()


@pytest.fixture
def fake_llm() -> FakeLLMClient:
    return FakeLLMClient()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def usage_gate(helper_config, repo, clock) -> UsageGate:
    return UsageGate(helper_config=helper_config, repo_client=repo, clock=clock)
