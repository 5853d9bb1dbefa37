"""Snapshot-backed keyword indices.

Each knowledge source is materialised as one JSON snapshot file
``{"refreshedAt": ..., "<items_key>": [...]}``. A refresh rebuilds the whole
snapshot from the raw source; nothing is merged. Queries re-read the snapshot
and rank records by how many query tokens appear in their flattened text.
"""

import asyncio
import json
import logging
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

logger = logging.getLogger(__name__)


def utc_iso() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def tokenize(query: Any) -> List[str]:
    return [token for token in str(query or "").lower().split() if token]


def score_text(text: Any, tokens: List[str]) -> int:
    haystack = str(text or "").lower()
    return sum(1 for token in tokens if token and token in haystack)


def rank_records(
    records: List[Dict[str, Any]],
    tokens: List[str],
    text_of: Callable[[Dict[str, Any]], str],
    tie_break: Callable[[Dict[str, Any]], Tuple],
) -> List[Dict[str, Any]]:
    if not tokens:
        # Nothing to rank by: keep snapshot order.
        return list(records)
    scored = [(score_text(text_of(record), tokens), record) for record in records]
    matched = [(score, record) for score, record in scored if score > 0]
    matched.sort(key=lambda pair: (-pair[0], tie_break(pair[1])))
    return [record for _, record in matched]


class SnapshotIndex:
    kind = "records"
    items_key = "records"
    default_limit = 5
    max_limit = 20
    auto_refresh = True

    def __init__(self, index_path: Path):
        self.index_path = Path(index_path)

    async def build_records(self) -> List[Dict[str, Any]]:
        raise NotImplementedError

    def snapshot_extras(self) -> Dict[str, Any]:
        return {}

    def record_text(self, record: Dict[str, Any]) -> str:
        return str(record.get("text") or "")

    def tie_break(self, record: Dict[str, Any]) -> Tuple:
        return (str(record.get("sourceFile") or ""),)

    async def refresh(self) -> Dict[str, Any]:
        records = await self.build_records()
        index: Dict[str, Any] = {"refreshedAt": utc_iso(), **self.snapshot_extras(), self.items_key: records}
        await asyncio.to_thread(self._write_snapshot, index)
        logger.info("Refreshed %s index: %d %s -> %s", self.kind, len(records), self.items_key, self.index_path)
        return index

    def _write_snapshot(self, index: Dict[str, Any]) -> None:
        self.index_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.index_path.with_name(self.index_path.name + ".tmp")
        tmp_path.write_text(json.dumps(index, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp_path, self.index_path)

    async def load(self) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_snapshot)

    def _read_snapshot(self) -> Optional[Dict[str, Any]]:
        try:
            raw = self.index_path.read_text(encoding="utf-8")
        except OSError:
            return None
        try:
            data = json.loads(raw)
        except ValueError:
            logger.warning("Ignoring unreadable %s snapshot at %s", self.kind, self.index_path)
            return None
        if not isinstance(data, dict) or not isinstance(data.get(self.items_key), list):
            logger.warning("Ignoring malformed %s snapshot at %s", self.kind, self.index_path)
            return None
        data[self.items_key] = [item for item in data[self.items_key] if isinstance(item, dict)]
        return data

    async def search(self, query: str, limit: Optional[int] = None) -> Dict[str, Any]:
        limit = self.default_limit if limit is None else limit
        index = await self.load()
        if index is None:
            if not self.auto_refresh:
                return {self.items_key: []}
            index = await self.refresh()
        records = index.get(self.items_key) or []
        ranked = rank_records(records, tokenize(query), self.record_text, self.tie_break)
        return {self.items_key: ranked[: max(limit, 0)], "refreshedAt": index.get("refreshedAt")}

    async def status(self) -> Dict[str, Any]:
        index = await self.load()
        return {
            "kind": self.kind,
            "path": str(self.index_path),
            "exists": index is not None,
            "refreshedAt": index.get("refreshedAt") if index else None,
            "count": len(index.get(self.items_key) or []) if index else 0,
        }
