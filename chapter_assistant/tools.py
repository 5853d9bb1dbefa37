"""Tool declarations and the dispatcher that serves them.

Every call yields a ToolResult. Bad arguments, unknown tools and downstream
failures become ``{"error": ...}`` responses so the conversation continues.
"""

import logging
import math
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from pydantic import BaseModel, Field

from .errors import ArgumentError, SourceUnavailable
from .snapshot import SnapshotIndex

logger = logging.getLogger(__name__)

WEB_SEARCH = "web_search"
IMAGE_SEARCH = "drive_image_search"
CSV_SEARCH = "csv_search"
JSON_SEARCH = "json_search"
QA_SEARCH = "qa_search"

MISSING_QUERY_ERROR = "Missing required 'query' argument"
TOOL_FAILED_ERROR = "failed to call tool"

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Any]]


class ToolCall(BaseModel):
    id: str = ""
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ToolResult(BaseModel):
    name: str
    response: Any
    call_id: str = ""


def _search_declaration(name: str, description: str, query_help: str, default_limit: Optional[int]) -> dict:
    properties: Dict[str, Any] = {"query": {"type": "string", "description": query_help}}
    if default_limit is not None:
        properties["limit"] = {
            "type": "number",
            "description": f"Max number of results to return (default {default_limit}).",
        }
    return {
        "type": "function",
        "function": {
            "name": name,
            "description": description,
            "parameters": {"type": "object", "properties": properties, "required": ["query"]},
        },
    }


TOOL_DECLARATIONS: List[dict] = [
    _search_declaration(
        WEB_SEARCH,
        "Search the web for current information about GDGOC IET DAVV events, workshops, or official "
        "updates on the GDGOC sites.",
        "The search query, e.g., 'latest events at GDGOC IET DAVV'",
        None,
    ),
    _search_declaration(
        IMAGE_SEARCH,
        "Search the indexed GDGOC IET DAVV Drive images and captions for relevant results.",
        "Search query for the Drive image index.",
        5,
    ),
    _search_declaration(
        CSV_SEARCH,
        "Search the indexed GDGOC IET DAVV CSV datasets for structured answers.",
        "Search query for the CSV index.",
        5,
    ),
    _search_declaration(
        JSON_SEARCH,
        "Search the indexed GDGOC IET DAVV JSON datasets for structured answers.",
        "Search query for the JSON index.",
        5,
    ),
    _search_declaration(
        QA_SEARCH,
        "Search the indexed GDGOC IET DAVV QA pairs for a direct answer.",
        "Search query for the QA index.",
        3,
    ),
]


def declared_names(declarations: Iterable[dict]) -> List[str]:
    return [str((decl.get("function") or {}).get("name") or "") for decl in declarations]


def validate_registry(declarations: Iterable[dict], handlers: Dict[str, ToolHandler]) -> None:
    names = declared_names(declarations)
    duplicates = sorted({name for name in names if names.count(name) > 1})
    if duplicates:
        raise ValueError(f"tools declared more than once: {', '.join(duplicates)}")
    missing = sorted(set(names) - set(handlers))
    if missing:
        raise ValueError(f"declared tools without a handler: {', '.join(missing)}")
    undeclared = sorted(set(handlers) - set(names))
    if undeclared:
        raise ValueError(f"handlers without a declaration: {', '.join(undeclared)}")


def require_query(arguments: Dict[str, Any]) -> str:
    query = arguments.get("query")
    if not isinstance(query, str):
        raise ArgumentError(MISSING_QUERY_ERROR)
    return query


def coerce_limit(value: Any, default: int, maximum: int) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if not math.isfinite(value) or value <= 0:
        return default
    return max(1, min(int(value), maximum))


def scope_web_query(query: str, sites: List[str], phrase: str) -> str:
    """Restrict a web query to the allowed sites and the required phrase.

    A ``site:`` token outside the allow list is rejected; without any
    ``site:`` token the first allowed site is prepended. The phrase is
    appended in quotes when the query does not already contain it.
    """
    scoped = query.strip()
    allowed = {site.lower().rstrip("/") for site in sites}
    site_tokens = [token for token in scoped.split() if token.lower().startswith("site:")]
    for token in site_tokens:
        domain = token[len("site:"):].strip("\"'").lower().rstrip("/")
        if domain not in allowed:
            raise ArgumentError(f"web_search is limited to official sources; {domain!r} is not allowed")
    if not site_tokens and sites:
        scoped = f"site:{sites[0]} {scoped}".strip()
    if phrase and phrase.lower() not in scoped.lower():
        scoped = f'{scoped} "{phrase}"'
    return scoped


def image_refs(result: ToolResult) -> List[Dict[str, Any]]:
    if result.name != IMAGE_SEARCH or not isinstance(result.response, dict):
        return []
    refs = []
    for item in result.response.get("items") or []:
        if not isinstance(item, dict) or not item.get("directUrl"):
            continue
        refs.append(
            {
                "id": item.get("id"),
                "name": item.get("name") or "untitled",
                "image_url": item["directUrl"],
                "thumb_url": item.get("thumbnailLink"),
            }
        )
    return refs


class ToolDispatcher:
    def __init__(
        self,
        web_search: Any,
        image_index: SnapshotIndex,
        csv_index: SnapshotIndex,
        json_index: SnapshotIndex,
        qa_index: SnapshotIndex,
        web_search_sites: Optional[List[str]] = None,
        web_search_phrase: str = "",
        web_search_depth: str = "advanced",
        web_search_max_results: int = 5,
        declarations: Optional[List[dict]] = None,
    ):
        self.web_search = web_search
        self.web_search_sites = list(web_search_sites or [])
        self.web_search_phrase = web_search_phrase
        self.web_search_depth = web_search_depth
        self.web_search_max_results = web_search_max_results
        self.declarations = declarations if declarations is not None else TOOL_DECLARATIONS
        self.handlers: Dict[str, ToolHandler] = {
            WEB_SEARCH: self._search_web,
            IMAGE_SEARCH: self._index_handler(image_index),
            CSV_SEARCH: self._index_handler(csv_index),
            JSON_SEARCH: self._index_handler(json_index),
            QA_SEARCH: self._index_handler(qa_index),
        }
        validate_registry(self.declarations, self.handlers)

    @classmethod
    def from_settings(cls, settings: Any, web_search: Any, indices: Dict[str, SnapshotIndex]) -> "ToolDispatcher":
        return cls(
            web_search=web_search,
            image_index=indices["image"],
            csv_index=indices["csv"],
            json_index=indices["json"],
            qa_index=indices["qa"],
            web_search_sites=settings.web_search_sites,
            web_search_phrase=settings.web_search_phrase,
            web_search_depth=settings.web_search_depth,
            web_search_max_results=settings.web_search_max_results,
        )

    async def dispatch(self, call: ToolCall) -> ToolResult:
        handler = self.handlers.get(call.name)
        if handler is None:
            logger.warning("Model requested unknown tool %r", call.name)
            return ToolResult(name=call.name, response={"error": f"Unknown tool: {call.name}"}, call_id=call.id)
        arguments = call.arguments if isinstance(call.arguments, dict) else {}
        try:
            response = await handler(arguments)
        except ArgumentError as exc:
            logger.warning("Tool %s called with bad arguments: %s", call.name, exc.message)
            response = {"error": exc.message}
        except Exception:
            logger.warning("Tool %s failed", call.name, exc_info=True)
            response = {"error": TOOL_FAILED_ERROR}
        return ToolResult(name=call.name, response=response, call_id=call.id)

    async def dispatch_all(
        self, calls: List[ToolCall], cancelled: Optional[Callable[[], bool]] = None
    ) -> List[ToolResult]:
        """Dispatch calls in order, stopping early once ``cancelled()`` is true."""
        results = []
        for call in calls:
            if cancelled is not None and cancelled():
                logger.info("Skipping %d remaining tool calls after cancellation", len(calls) - len(results))
                break
            results.append(await self.dispatch(call))
        return results

    async def _search_web(self, arguments: Dict[str, Any]) -> Any:
        query = scope_web_query(require_query(arguments), self.web_search_sites, self.web_search_phrase)
        return await self.web_search.search(
            query,
            search_depth=self.web_search_depth,
            max_results=self.web_search_max_results,
        )

    def _index_handler(self, index: SnapshotIndex) -> ToolHandler:
        async def _handler(arguments: Dict[str, Any]) -> Any:
            query = require_query(arguments)
            limit = coerce_limit(arguments.get("limit"), index.default_limit, index.max_limit)
            try:
                return await index.search(query, limit)
            except SourceUnavailable as exc:
                logger.warning("%s index unavailable: %s", index.kind, exc.message)
                return {index.items_key: []}

        return _handler
