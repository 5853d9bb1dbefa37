import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .errors import ParseError, SourceUnavailable
from .snapshot import SnapshotIndex

logger = logging.getLogger(__name__)


def to_flat_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, list):
        return " | ".join(flat for flat in (to_flat_text(item) for item in value) if flat)
    if isinstance(value, dict):
        parts = []
        for key, child in value.items():
            flat = to_flat_text(child)
            if flat:
                parts.append(f"{key}: {flat}")
        return " | ".join(parts)
    return ""


def collect_records(value: Any, source_file: str, pointer: str, records: List[Dict[str, Any]]) -> None:
    """Emit one record per object and per non-empty scalar, depth first."""
    if isinstance(value, list):
        for index, item in enumerate(value):
            collect_records(item, source_file, f"{pointer}/{index}", records)
        return
    text = to_flat_text(value)
    if text:
        records.append({"sourceFile": source_file, "pointer": pointer, "data": value, "text": text})
    if isinstance(value, dict):
        for key, child in value.items():
            collect_records(child, source_file, f"{pointer}/{key}", records)


class JsonIndex(SnapshotIndex):
    kind = "json"
    items_key = "records"
    default_limit = 5
    max_limit = 20

    def __init__(self, data_dir: Path, index_path: Path):
        super().__init__(index_path)
        self.data_dir = Path(data_dir)

    def tie_break(self, record: Dict[str, Any]) -> Tuple:
        return (str(record.get("sourceFile") or ""), str(record.get("pointer") or ""))

    async def build_records(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_source)

    def _read_source(self) -> List[Dict[str, Any]]:
        try:
            files = sorted(
                entry for entry in self.data_dir.iterdir() if entry.is_file() and entry.name.lower().endswith(".json")
            )
        except OSError as exc:
            raise SourceUnavailable(f"cannot list JSON directory {self.data_dir}: {exc}") from exc
        records: List[Dict[str, Any]] = []
        for path in files:
            try:
                parsed = self._parse_file(path)
            except ParseError as exc:
                logger.warning("Skipping JSON file %s: %s", path.name, exc.message)
                continue
            collect_records(parsed, path.name, "$", records)
        return records

    def _parse_file(self, path: Path) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            raise ParseError(str(exc), source=path.name) from exc
