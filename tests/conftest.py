from pathlib import Path

import pytest

from chapter_assistant.chat import LocalChatPlatform
from chapter_assistant.config import AppSettings
from chapter_assistant.responder import InMemoryThrottleLedger
from chapter_assistant.tools import ToolDispatcher
from tests.fakes import FakeIndex, FakeTavilyClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    data_dir = tmp_path / "data"
    settings = AppSettings(
        model_base_url="http://model.test/v1",
        model_id="test-model",
        model_api_key="model-key",
        tavily_api_key=None,
        drive_api_key=None,
        drive_folder_id="folder-1",
        csv_data_dir=str(data_dir),
        json_data_dir=str(data_dir),
        qa_data_dir=str(data_dir),
        csv_index_path=str(tmp_path / "csv-index.json"),
        json_index_path=str(tmp_path / "json-index.json"),
        qa_index_path=str(tmp_path / "qa-index.json"),
        drive_index_path=str(tmp_path / "drive-images.json"),
        flush_interval_s=1.0,
        throttle_interval_s=5.0,
        retry_max_attempts=3,
        retry_base_delay_s=1.0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def platform():
    return LocalChatPlatform()


@pytest.fixture
def ledger():
    return InMemoryThrottleLedger()


@pytest.fixture
def fake_indices():
    return {
        "image": FakeIndex("image", "items", 5, 10),
        "csv": FakeIndex("csv", "records", 5, 20),
        "json": FakeIndex("json", "records", 5, 20),
        "qa": FakeIndex("qa", "records", 3, 10),
    }


@pytest.fixture
def dispatcher_factory(settings, fake_indices):
    def _factory(web_search=None, **overrides):
        web_search = web_search or FakeTavilyClient(api_key="tv-key")
        active = settings.model_copy(update=overrides) if overrides else settings
        return ToolDispatcher.from_settings(active, web_search, fake_indices)

    return _factory
