"""Shared fixtures: isolated settings and a recording mock transport."""

import pytest

from src.core.settings import LlmSettings, reset_settings
from tests.helpers import RecordingHandler, make_transport


@pytest.fixture(autouse=True)
def isolated_settings(tmp_path):
    """Every test gets default settings with the log file under tmp_path."""
    settings = LlmSettings(log_file=str(tmp_path / "llm_client.log"))
    reset_settings(settings)
    yield settings
    reset_settings(None)


@pytest.fixture
def recording():
    return RecordingHandler()


@pytest.fixture
def transport(recording):
    return make_transport(recording)
