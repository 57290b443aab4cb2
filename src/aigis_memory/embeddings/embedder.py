"""
Embedding Client

Talks to the OpenAI embeddings API (or any compatible provider). It is
responsible for:

- Batching text inputs per request
- Transport error isolation (every failure surfaces as EmbeddingError)
- Strict response validation, including vector dimension
- Order preservation: output[i] is the vector for input[i]

The same text and model always produce the same request, so vectors are as
deterministic as the backend model itself. Retries live one level up.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

import httpx

from ..core.errors import ConfigurationError, EmbeddingError

logger = logging.getLogger("aigis.embedder")


class Embedder:
    """
    Asynchronous embedding generator for batches of text.

    This class performs no caching and holds no connection between calls.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        base_url: str = "https://api.openai.com/v1/embeddings",
        timeout: float = 60.0,
        dimension: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        """
        Parameters
        ----------
        api_key : str
            Bearer credential for the embeddings endpoint.

        model : str
            Embedding model name. Treated as the model version.

        base_url : str
            Full URL of the embeddings endpoint.

        timeout : float
            HTTP timeout for each request.

        dimension : Optional[int]
            Expected vector length. When set, any other length is rejected.

        transport : Optional[httpx.AsyncBaseTransport]
            Custom transport, mainly for tests.
        """
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.dimension = dimension
        self._transport = transport

    @classmethod
    def from_settings(cls, settings) -> "Embedder":
        return cls(
            api_key=settings.openai_api_key.get_secret_value(),
            model=settings.embedding_model,
            base_url=settings.embedding_base_url,
            timeout=settings.embedding_timeout,
            dimension=settings.embedding_dimension,
        )

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def embed(
        self,
        texts: Sequence[str],
        batch_size: int = 64,
    ) -> List[List[float]]:
        """
        Generate embeddings for a sequence of input texts.

        Returns
        -------
        List[List[float]]
            One vector per input, in input order.

        Raises
        ------
        EmbeddingError
            If any request fails or the response is malformed.
        """
        if not texts:
            return []

        all_embeddings: List[List[float]] = []
        headers = {"Authorization": f"Bearer {self.api_key}"}

        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            for start in range(0, len(texts), batch_size):
                batch = list(texts[start : start + batch_size])
                payload = {
                    "model": self.model,
                    "input": batch,
                }

                try:
                    response = await client.post(
                        self.base_url,
                        json=payload,
                        headers=headers,
                    )
                    response.raise_for_status()
                    data = response.json()
                except (httpx.HTTPError, ValueError) as exc:
                    logger.error(
                        "Embedding request failed (%s): batch size=%d, error=%s",
                        type(exc).__name__,
                        len(batch),
                        str(exc),
                    )
                    raise EmbeddingError(
                        f"Embedding generation failed: {type(exc).__name__}"
                    ) from exc

                embeddings = self._extract_embeddings(data, expected=len(batch))
                all_embeddings.extend(embeddings)

        return all_embeddings

    async def probe_dimension(self) -> int:
        """
        Embed a fixed probe string and check the vector length.

        Raises
        ------
        ConfigurationError
            If the backend is unreachable, rejects the credentials, or returns
            vectors of a different length than configured.
        """
        try:
            vectors = await self.embed(["dimension probe"])
        except EmbeddingError as exc:
            raise ConfigurationError(f"Embedding backend unusable: {exc}") from exc

        actual = len(vectors[0])
        if self.dimension is not None and actual != self.dimension:
            raise ConfigurationError(
                f"Model {self.model} returns {actual}-d vectors, "
                f"store is configured for {self.dimension}"
            )
        return actual

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _extract_embeddings(self, data: dict, expected: int) -> List[List[float]]:
        """
        Parse and validate embedding output format.

        OpenAI returns:
            { "data": [ {"index": 0, "embedding": [...]}, ... ] }

        Records are re-ordered by "index" when present.
        """
        if not isinstance(data, dict) or "data" not in data:
            raise EmbeddingError("Embedding response missing 'data' field.")

        records = data["data"]
        if not isinstance(records, list):
            raise EmbeddingError("'data' field must be a list.")

        if len(records) != expected:
            raise EmbeddingError(
                f"Embedding response has {len(records)} vectors for {expected} inputs."
            )

        if all(isinstance(r, dict) and isinstance(r.get("index"), int) for r in records):
            records = sorted(records, key=lambda r: r["index"])

        embeddings: List[List[float]] = []

        for index, record in enumerate(records):
            if not isinstance(record, dict) or "embedding" not in record:
                raise EmbeddingError(
                    f"Malformed embedding record at index {index}: {record!r}"
                )

            emb = record["embedding"]
            if not isinstance(emb, list) or not emb or not all(
                isinstance(x, (float, int)) and not isinstance(x, bool) for x in emb
            ):
                raise EmbeddingError(
                    f"Invalid embedding vector at index {index}: must be float list."
                )

            if self.dimension is not None and len(emb) != self.dimension:
                raise EmbeddingError(
                    f"Embedding at index {index} has {len(emb)} dimensions, "
                    f"expected {self.dimension}."
                )

            embeddings.append([float(x) for x in emb])

        return embeddings
