import asyncio
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .errors import ParseError, SourceUnavailable
from .snapshot import SnapshotIndex

logger = logging.getLogger(__name__)


def parse_csv(text: str, delimiter: str = ",") -> List[List[str]]:
    """Split delimited text into rows of fields.

    Quoted fields may contain the delimiter, newlines and doubled quotes.
    Both ``\\r\\n`` and ``\\n`` end a row; a last row without a trailing
    newline is kept. An unterminated quote raises ParseError.
    """
    rows: List[List[str]] = []
    current: List[str] = []
    field: List[str] = []
    in_quotes = False
    i = 0
    length = len(text)
    while i < length:
        char = text[i]
        nxt = text[i + 1] if i + 1 < length else ""
        if in_quotes:
            if char == '"' and nxt == '"':
                field.append('"')
                i += 2
                continue
            if char == '"':
                in_quotes = False
                i += 1
                continue
            field.append(char)
            i += 1
            continue
        if char == '"':
            in_quotes = True
            i += 1
            continue
        if char == delimiter:
            current.append("".join(field))
            field = []
            i += 1
            continue
        if char == "\r" and nxt == "\n":
            current.append("".join(field))
            rows.append(current)
            current, field = [], []
            i += 2
            continue
        if char == "\n":
            current.append("".join(field))
            rows.append(current)
            current, field = [], []
            i += 1
            continue
        field.append(char)
        i += 1
    if in_quotes:
        raise ParseError("unterminated quoted field", location=f"row {len(rows) + 1}")
    if field or current:
        current.append("".join(field))
        rows.append(current)
    return rows


def build_text(data: Dict[str, str]) -> str:
    return " | ".join(f"{key}: {value}".strip() for key, value in data.items())


def rows_to_records(rows: List[List[str]], source_file: str) -> List[Dict[str, Any]]:
    if not rows:
        return []
    headers = [(header or "").strip().lower() for header in rows[0]]
    records: List[Dict[str, Any]] = []
    for row_index in range(1, len(rows)):
        row = rows[row_index]
        if all(not cell or not cell.strip() for cell in row):
            continue
        data: Dict[str, str] = {}
        for col_index, header in enumerate(headers):
            key = header or f"column_{col_index + 1}"
            value = row[col_index] if col_index < len(row) else ""
            data[key] = value.strip()
        records.append(
            {
                "sourceFile": source_file,
                "rowIndex": row_index,
                "data": data,
                "text": build_text(data),
            }
        )
    return records


class CsvIndex(SnapshotIndex):
    kind = "csv"
    items_key = "records"
    default_limit = 5
    max_limit = 20

    def __init__(self, data_dir: Path, index_path: Path):
        super().__init__(index_path)
        self.data_dir = Path(data_dir)

    def tie_break(self, record: Dict[str, Any]) -> Tuple:
        return (str(record.get("sourceFile") or ""), int(record.get("rowIndex") or 0))

    async def build_records(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_source)

    def _read_source(self) -> List[Dict[str, Any]]:
        try:
            files = sorted(
                entry for entry in self.data_dir.iterdir() if entry.is_file() and entry.name.lower().endswith(".csv")
            )
        except OSError as exc:
            raise SourceUnavailable(f"cannot list CSV directory {self.data_dir}: {exc}") from exc
        records: List[Dict[str, Any]] = []
        for path in files:
            try:
                rows = self._parse_file(path)
            except ParseError as exc:
                logger.warning("Skipping CSV file %s (%s): %s", path.name, exc.location or "-", exc.message)
                continue
            records.extend(rows_to_records(rows, path.name))
        return records

    def _parse_file(self, path: Path) -> List[List[str]]:
        try:
            content = path.read_text(encoding="utf-8")
        except UnicodeDecodeError as exc:
            raise ParseError(f"not valid UTF-8: {exc}", source=path.name) from exc
        except OSError as exc:
            raise ParseError(f"unreadable: {exc}", source=path.name) from exc
        try:
            return parse_csv(content)
        except ParseError as exc:
            exc.source = path.name
            raise
