"""
Embedding Provider

This module implements the default embedding provider: a thin client for
the OpenAI embeddings API (or any compatible endpoint). It is responsible
for:

- Sending one batch of texts per request
- Network and transport error isolation
- Strict response validation (count, shape, ordering)

Batching across requests, retries and caching live in `EmbeddingCache`;
this class performs exactly one provider call per `embed()` invocation.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Protocol, Sequence

import httpx

from ..core.errors import EmbeddingProviderError

logger = logging.getLogger("kb.embeddings")


class EmbeddingProvider(Protocol):
    """
    Capability consumed by `EmbeddingCache`.
    """

    model: str

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        ...


class OpenAIEmbedder:
    """
    Asynchronous embedding client for an OpenAI-compatible endpoint.

    Parameters
    ----------
    api_key : str
        Bearer token for the provider.

    model : str
        Embedding model name, also used to namespace cache keys.

    base_url : str
        Full URL of the embeddings endpoint.

    dimensions : Optional[int]
        Expected vector dimension. When set, responses with a different
        dimension are rejected.

    timeout : float
        HTTP timeout for each request.

    client : Optional[httpx.AsyncClient]
        Injected client (tests). When omitted, one client is created lazily
        and reused until `aclose()`.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1/embeddings",
        dimensions: Optional[int] = None,
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.dimensions = dimensions
        self.timeout = timeout
        self._client = client

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(self, texts: Sequence[str]) -> List[List[float]]:
        """
        Embed one batch of texts.

        Returns
        -------
        List[List[float]]
            One vector per input, in input order.

        Raises
        ------
        EmbeddingProviderError
            If the request fails or the response is malformed.
        """
        if not texts:
            return []

        batch = list(texts)
        payload = {"model": self.model, "input": batch}
        headers = {"Authorization": f"Bearer {self.api_key}"}

        try:
            response = await self._get_client().post(
                self.base_url,
                json=payload,
                headers=headers,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            logger.error(
                "Embedding request failed (%s): batch size=%d, error=%s",
                type(exc).__name__,
                len(batch),
                str(exc),
            )
            raise EmbeddingProviderError(
                f"Embedding generation failed: {type(exc).__name__}"
            ) from exc

        try:
            data = response.json()
        except ValueError as exc:
            raise EmbeddingProviderError("Embedding response is not valid JSON.") from exc

        embeddings = self._extract_embeddings(data)

        if len(embeddings) != len(batch):
            raise EmbeddingProviderError(
                f"Embedding count mismatch: sent {len(batch)}, received {len(embeddings)}"
            )

        if self.dimensions is not None:
            for index, emb in enumerate(embeddings):
                if len(emb) != self.dimensions:
                    raise EmbeddingProviderError(
                        f"Embedding at index {index} has dimension {len(emb)}, "
                        f"expected {self.dimensions}"
                    )

        return embeddings

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    @staticmethod
    def _extract_embeddings(data: dict) -> List[List[float]]:
        """
        Parse and validate embedding output format.

        OpenAI returns:
            { "data": [ {"index": 0, "embedding": [...]}, ... ] }

        Records are re-ordered by `index` when present.

        Raises
        ------
        EmbeddingProviderError
            If the API returns unexpected structure.
        """
        if not isinstance(data, dict) or "data" not in data:
            raise EmbeddingProviderError("Embedding response missing 'data' field.")

        records = data["data"]
        if not isinstance(records, list):
            raise EmbeddingProviderError("'data' field must be a list.")

        if all(isinstance(r, dict) and isinstance(r.get("index"), int) for r in records):
            records = sorted(records, key=lambda r: r["index"])

        embeddings: List[List[float]] = []

        for index, record in enumerate(records):
            if not isinstance(record, dict) or "embedding" not in record:
                raise EmbeddingProviderError(
                    f"Malformed embedding record at index {index}: {record!r}"
                )

            emb = record["embedding"]
            if not isinstance(emb, list) or not emb or not all(
                isinstance(x, (float, int)) and not isinstance(x, bool) for x in emb
            ):
                raise EmbeddingProviderError(
                    f"Invalid embedding vector at index {index}: must be non-empty float list."
                )

            embeddings.append([float(x) for x in emb])

        return embeddings
