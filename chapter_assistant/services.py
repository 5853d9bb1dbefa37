"""Wiring for the long-lived clients, indices and dispatcher."""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import httpx

from .config import AppSettings
from .csv_index import CsvIndex
from .drive_index import DriveImageIndex
from .json_index import JsonIndex
from .llm import ModelClient
from .qa_index import QaIndex
from .snapshot import SnapshotIndex
from .tavily import TavilyClient
from .tools import ToolDispatcher

INDEX_KINDS = ("csv", "json", "qa", "image")


def build_indices(settings: AppSettings, http_client: Optional[httpx.AsyncClient] = None) -> Dict[str, SnapshotIndex]:
    return {
        "csv": CsvIndex(Path(settings.csv_data_dir), Path(settings.csv_index_path)),
        "json": JsonIndex(Path(settings.json_data_dir), Path(settings.json_index_path)),
        "qa": QaIndex(Path(settings.qa_data_dir) / settings.qa_file, Path(settings.qa_index_path)),
        "image": DriveImageIndex(
            settings.drive_folder_id,
            settings.drive_api_key,
            Path(settings.drive_index_path),
            client=http_client,
        ),
    }


@dataclass
class Services:
    settings: AppSettings
    http_client: httpx.AsyncClient
    model_client: ModelClient
    web_search: TavilyClient
    indices: Dict[str, SnapshotIndex]
    dispatcher: ToolDispatcher

    async def close(self) -> None:
        await self.model_client.close()
        await self.web_search.close()
        if not self.http_client.is_closed:
            await self.http_client.aclose()


def build_services(
    settings: AppSettings,
    *,
    http_client: Optional[httpx.AsyncClient] = None,
    model_client: Optional[ModelClient] = None,
    web_search: Optional[TavilyClient] = None,
) -> Services:
    http_client = http_client or httpx.AsyncClient(timeout=60)
    model_client = model_client or ModelClient(
        settings.model_base_url,
        settings.model_id,
        api_key=settings.model_api_key,
        temperature=settings.model_temperature,
    )
    web_search = web_search or TavilyClient(settings.tavily_api_key)
    indices = build_indices(settings, http_client)
    dispatcher = ToolDispatcher.from_settings(settings, web_search, indices)
    return Services(settings, http_client, model_client, web_search, indices, dispatcher)
