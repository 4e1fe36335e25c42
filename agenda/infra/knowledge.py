"""
Knowledge Retrieval Client

Fetches knowledge-base snippets relevant to a customer message from the
retrieval service. Retrieval is best effort: any error or timeout yields no
snippets.
"""

import logging
from typing import Optional, Protocol

import httpx

from agenda.config import settings

logger = logging.getLogger(__name__)


class KnowledgeRetriever(Protocol):
    async def find_relevant(self, agent_id: str, query: str) -> list[str]: ...


class HttpKnowledgeRetriever:
    """
    Client for the semantic search endpoint.

    Request:  POST {base_url}/v1/search
              {"agent_id", "query", "limit", "threshold"}
    Response: {"results": [{"content": str, "similarity": float}, ...]}
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        max_results: Optional[int] = None,
        threshold: Optional[float] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = base_url or settings.knowledge_service_url
        self.max_results = max_results or settings.knowledge_max_results
        self.threshold = threshold if threshold is not None else settings.knowledge_similarity_threshold
        self.timeout = timeout or settings.knowledge_timeout
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def find_relevant(self, agent_id: str, query: str) -> list[str]:
        if not self.base_url or not query.strip():
            return []

        client = await self._get_client()
        try:
            response = await client.post(
                "/v1/search",
                json={
                    "agent_id": agent_id,
                    "query": query,
                    "limit": self.max_results,
                    "threshold": self.threshold,
                },
            )
            response.raise_for_status()
            results = response.json().get("results", [])
        except (httpx.HTTPError, ValueError) as e:
            logger.warning(f"Knowledge retrieval failed, continuing without it: {e!r}")
            return []

        snippets = [
            r["content"]
            for r in results
            if r.get("content") and r.get("similarity", 1.0) >= self.threshold
        ]
        return snippets[: self.max_results]
