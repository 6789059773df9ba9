"""Fact embeddings over an OpenAI-compatible ``/embeddings`` endpoint.

The same client serves the hosted OpenAI API and local servers that speak
its protocol (Ollama, LM Studio, vLLM). Vectors come back unit-length so
the fact store can compare them with a plain dot product.
"""

import asyncio
import logging
import os
from typing import Optional

import httpx

from ..interfaces import IEmbeddingService
from ..utils import cosine_similarity, normalize_embedding

logger = logging.getLogger(__name__)

OPENAI_HOST = "api.openai.com"

# text-embedding-3-small accepts 8191 tokens; assume 4 bytes per token worst case
MAX_INPUT_BYTES = 8191 * 4

# Status codes worth another attempt; anything else non-200 fails at once
RETRY_STATUSES = frozenset({429, 500, 502, 503, 504})


def is_local_api_base(api_base: Optional[str]) -> bool:
    """True when ``api_base`` points at a server other than OpenAI's."""
    if api_base is None or not api_base.strip():
        return False
    return OPENAI_HOST not in api_base.lower()


class OpenAIEmbeddingService(IEmbeddingService):
    """Embeds fact values for semantic dedup.

    Usage:
        embedder = OpenAIEmbeddingService(api_key="sk-...")
        vector = await embedder.embed("Senior Engineer")

        # Ollama on this machine, no key
        embedder = OpenAIEmbeddingService(
            api_base="http://localhost:11434/v1",
            model="nomic-embed-text",
            dimensions=768,
        )

    Timeouts, connection errors, 429 and 5xx responses are retried with
    exponential backoff. The fact service treats any exception raised here
    as "semantic dedup unavailable" and falls back to text dedup.
    """

    DEFAULT_MODEL = "text-embedding-3-small"
    DEFAULT_DIMENSIONS = 1536
    DEFAULT_API_BASE = f"https://{OPENAI_HOST}/v1"
    LOCAL_API_KEY_PLACEHOLDER = "local-no-key-needed"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = DEFAULT_MODEL,
        dimensions: int = DEFAULT_DIMENSIONS,
        max_retries: int = 3,
        timeout_seconds: float = 30.0,
        backoff_base: float = 2.0,
        backoff_max: float = 60.0,
        api_base: Optional[str] = None,
    ):
        """
        Args:
            api_key: Bearer token; OPENAI_API_KEY when omitted. Local servers
                get a placeholder instead.
            model: Model name sent with every request.
            dimensions: Requested vector size, 1 to 8192.
            max_retries: Attempts per request.
            timeout_seconds: Per-request timeout.
            backoff_base: Sleep after attempt ``n`` is ``backoff_base ** n``...
            backoff_max: ...capped at this many seconds.
            api_base: Server root such as "http://localhost:11434/v1".

        Raises:
            ValueError: Dimensions out of range, a non-HTTP base URL, or no
                key for the hosted API.
        """
        if not 1 <= dimensions <= 8192:
            raise ValueError(f"Dimensions must be between 1 and 8192, got {dimensions}")

        self.api_url = self._resolve_api_url(api_base)
        self.api_key = api_key or os.environ.get("OPENAI_API_KEY")
        if not self.api_key:
            if not is_local_api_base(api_base):
                raise ValueError(
                    "OpenAI API key required. Pass api_key or set OPENAI_API_KEY env var."
                )
            self.api_key = self.LOCAL_API_KEY_PLACEHOLDER

        self.model = model
        self.dimensions = dimensions
        self.max_retries = max_retries
        self.timeout_seconds = timeout_seconds
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max

        self._client: Optional[httpx.AsyncClient] = None

    @staticmethod
    def _resolve_api_url(api_base: Optional[str] = None) -> str:
        """Endpoint URL for a server root; a full ``.../embeddings`` URL is kept.

        Raises:
            ValueError: ``api_base`` is not http(s).
        """
        if api_base is None or not api_base.strip():
            return f"{OpenAIEmbeddingService.DEFAULT_API_BASE}/embeddings"

        root = api_base.strip().rstrip("/")
        if not root.startswith(("http://", "https://")):
            raise ValueError(f"api_base must be an HTTP(S) URL, got: {root}")
        return root if root.endswith("/embeddings") else f"{root}/embeddings"

    def __repr__(self) -> str:
        return f"OpenAIEmbeddingService(model={self.model!r}, api_key=***)"

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds),
                headers={"Authorization": f"Bearer {self.api_key}"},
            )
        return self._client

    def _delay(self, attempt: int, response: Optional[httpx.Response] = None) -> float:
        if response is not None and response.status_code == 429:
            return float(response.headers.get("Retry-After", 5))
        return min(self.backoff_base ** attempt, self.backoff_max)

    async def embed(self, text: str) -> list[float]:
        (vector,) = await self.embed_batch([text])
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """One request for all ``texts``; vectors keep the input order.

        Raises:
            RuntimeError: The server rejected the request, or every attempt
                failed.
        """
        if not texts:
            return []

        client = await self._get_client()
        payload = {
            "model": self.model,
            "input": [self._prepare(t) for t in texts],
            "dimensions": self.dimensions,
        }

        failure: object = None
        for attempt in range(self.max_retries):
            try:
                response = await client.post(self.api_url, json=payload)
            except httpx.RequestError as e:
                failure = e
                logger.warning("Embedding request failed (attempt %d): %s", attempt + 1, e)
                await asyncio.sleep(self._delay(attempt))
                continue

            if response.status_code == 200:
                items = sorted(response.json()["data"], key=lambda item: item["index"])
                return [normalize_embedding(item["embedding"]) for item in items]

            if response.status_code in RETRY_STATUSES:
                failure = f"HTTP {response.status_code}"
                logger.warning(
                    "Embedding server answered %d (attempt %d)", response.status_code, attempt + 1
                )
                await asyncio.sleep(self._delay(attempt, response))
                continue

            raise RuntimeError(
                f"Embedding API error ({response.status_code}): {self._error_detail(response)}"
            )

        raise RuntimeError(f"Embedding API failed after {self.max_retries} retries: {failure}")

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            return response.json().get("error", {}).get("message", response.text)
        except ValueError:
            return response.text[:200]

    def similarity(self, a: list[float], b: list[float]) -> float:
        return cosine_similarity(a, b)

    @staticmethod
    def _prepare(text: str) -> str:
        """Collapse whitespace and cut to the input limit on a UTF-8 boundary."""
        collapsed = " ".join(text.split())
        raw = collapsed.encode("utf-8")
        if len(raw) <= MAX_INPUT_BYTES:
            return collapsed
        return raw[:MAX_INPUT_BYTES].decode("utf-8", errors="ignore")

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()
