import logging
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

TAVILY_SEARCH_URL = "https://api.tavily.com/search"


class TavilyClient:
    def __init__(self, api_key: Optional[str], client: Optional[httpx.AsyncClient] = None):
        self.api_key = api_key
        # Concurrent runs share one connection pool.
        self.client = client or httpx.AsyncClient(
            timeout=60,
            limits=httpx.Limits(max_connections=32, max_keepalive_connections=16),
        )

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def search(
        self,
        query: str,
        search_depth: str = "advanced",
        max_results: int = 5,
        include_answer: bool = True,
    ) -> Dict[str, Any]:
        if not self.enabled:
            return {"error": "Web search is not available. API key not configured."}
        payload: Dict[str, Any] = {
            "query": query,
            "search_depth": search_depth,
            "max_results": max_results,
            "include_answer": include_answer,
            "include_raw_content": False,
        }
        logger.info("Web search for %r", query)
        return await self._post(TAVILY_SEARCH_URL, payload)

    async def _post(self, url: str, payload: Dict[str, Any]) -> Dict[str, Any]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            # Dev keys are read from the JSON payload; keep the headers for compatibility.
            payload = {**payload, "api_key": self.api_key}
            headers["Authorization"] = f"Bearer {self.api_key}"
            headers["X-API-Key"] = self.api_key
        try:
            resp = await self.client.post(url, json=payload, headers=headers)
            resp.raise_for_status()
            return resp.json()
        except httpx.HTTPStatusError as e:
            detail: Any
            try:
                detail = e.response.json()
            except Exception:
                detail = e.response.text
            logger.warning("Web search failed with status %s", e.response.status_code)
            return {"error": f"Search failed with status: {e.response.status_code}", "details": detail}
        except httpx.RequestError as e:
            logger.warning("Web search request failed: %s", e)
            return {"error": "An exception occurred during the search.", "message": str(e)}

    async def close(self) -> None:
        # Safe to call multiple times
        if not self.client.is_closed:
            await self.client.aclose()
