import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import httpx

from .errors import SourceUnavailable
from .snapshot import SnapshotIndex

logger = logging.getLogger(__name__)

DRIVE_FILES_URL = "https://www.googleapis.com/drive/v3/files"
DRIVE_FIELDS = (
    "nextPageToken,files(id,name,mimeType,description,webViewLink,webContentLink,"
    "thumbnailLink,createdTime,modifiedTime)"
)
OPTIONAL_FIELDS = ("description", "webViewLink", "webContentLink", "thumbnailLink", "createdTime", "modifiedTime")


def direct_url(file_id: str) -> str:
    return f"https://drive.google.com/uc?export=download&id={file_id}"


def to_image_item(file: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    file_id = file.get("id")
    mime_type = file.get("mimeType") or ""
    if not file_id or not mime_type.startswith("image/"):
        return None
    item: Dict[str, Any] = {
        "id": file_id,
        "name": file.get("name") or "untitled",
        "mimeType": mime_type,
    }
    for key in OPTIONAL_FIELDS:
        if file.get(key) is not None:
            item[key] = file[key]
    item["directUrl"] = direct_url(file_id)
    item["text"] = f"{item['name']} {item.get('description') or ''}".strip()
    return item


class DriveImageIndex(SnapshotIndex):
    """Images listed from one Drive folder.

    The listing is quota-limited, so a missing snapshot is never rebuilt
    implicitly: searches degrade to an empty result until ``refresh`` runs.
    """

    kind = "image"
    items_key = "items"
    default_limit = 5
    max_limit = 10
    auto_refresh = False

    def __init__(
        self,
        folder_id: str,
        api_key: Optional[str],
        index_path: Path,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(index_path)
        self.folder_id = folder_id
        self.api_key = api_key
        self.client = client or httpx.AsyncClient(timeout=60)

    def record_text(self, record: Dict[str, Any]) -> str:
        return f"{record.get('name') or ''} {record.get('description') or ''}"

    def tie_break(self, record: Dict[str, Any]) -> Tuple:
        return (str(record.get("name") or ""), str(record.get("id") or ""))

    def snapshot_extras(self) -> Dict[str, Any]:
        return {"folderId": self.folder_id}

    async def build_records(self) -> List[Dict[str, Any]]:
        if not self.api_key:
            raise SourceUnavailable("GOOGLE_DRIVE_API_KEY is required for Drive indexing.")
        items: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            data = await self._list_page(page_token)
            for file in data.get("files") or []:
                if not isinstance(file, dict):
                    continue
                item = to_image_item(file)
                if item is not None:
                    items.append(item)
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return items

    async def _list_page(self, page_token: Optional[str]) -> Dict[str, Any]:
        params = {
            "q": f"'{self.folder_id}' in parents and mimeType contains 'image/' and trashed=false",
            "fields": DRIVE_FIELDS,
            "pageSize": 1000,
            "key": self.api_key,
        }
        if page_token:
            params["pageToken"] = page_token
        try:
            resp = await self.client.get(DRIVE_FILES_URL, params=params)
        except httpx.RequestError as exc:
            raise SourceUnavailable(f"Drive API request failed: {exc}") from exc
        if resp.status_code >= 400:
            raise SourceUnavailable(f"Drive API request failed ({resp.status_code}): {resp.text[:200]}")
        try:
            data = resp.json()
        except ValueError as exc:
            raise SourceUnavailable(f"Drive API returned invalid JSON: {exc}") from exc
        return data if isinstance(data, dict) else {}

    async def close(self) -> None:
        if not self.client.is_closed:
            await self.client.aclose()
