import asyncio
import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Tuple

from .errors import ParseError, SourceUnavailable
from .snapshot import SnapshotIndex

logger = logging.getLogger(__name__)


def parse_qa_line(line: str, source_file: str, line_no: int) -> Dict[str, Any]:
    try:
        parsed = json.loads(line)
    except ValueError as exc:
        raise ParseError(f"invalid JSON: {exc}", source=source_file, location=f"line {line_no}") from exc
    if not isinstance(parsed, dict):
        raise ParseError("expected an object", source=source_file, location=f"line {line_no}")
    question = parsed.get("question")
    answer = parsed.get("answer")
    if not isinstance(question, str) or not question or not isinstance(answer, str) or not answer:
        raise ParseError("missing question or answer", source=source_file, location=f"line {line_no}")
    return {
        "sourceFile": source_file,
        "question": question,
        "answer": answer,
        "text": f"question: {question} | answer: {answer}",
    }


class QaIndex(SnapshotIndex):
    kind = "qa"
    items_key = "records"
    default_limit = 3
    max_limit = 10

    def __init__(self, qa_path: Path, index_path: Path):
        super().__init__(index_path)
        self.qa_path = Path(qa_path)

    def tie_break(self, record: Dict[str, Any]) -> Tuple:
        return (str(record.get("sourceFile") or ""), str(record.get("question") or ""))

    async def build_records(self) -> List[Dict[str, Any]]:
        return await asyncio.to_thread(self._read_source)

    def _read_source(self) -> List[Dict[str, Any]]:
        try:
            content = self.qa_path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as exc:
            raise SourceUnavailable(f"cannot read QA file {self.qa_path}: {exc}") from exc
        records: List[Dict[str, Any]] = []
        for line_no, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                records.append(parse_qa_line(line, self.qa_path.name, line_no))
            except ParseError as exc:
                logger.warning("Skipping QA record %s:%s: %s", exc.source, exc.location, exc.message)
        return records
