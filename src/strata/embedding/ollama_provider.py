"""Ollama embedding provider with retry logic and health checks.

This module provides an HTTP client for the Ollama embeddings API with:
- Exponential backoff retry logic for network resilience
- Health checks to validate model availability
- Width validation so a misconfigured model never reaches the vector index

The default model is all-minilm, which produces 384-dimensional vectors
matching the store's vector tables.
"""

import logging
import time
from functools import wraps
from typing import Callable

import requests

from strata.constants import DEFAULT_OLLAMA_HOST, DEFAULT_OLLAMA_MODEL, EMBEDDING_DIM

logger = logging.getLogger(__name__)


class EmbeddingError(Exception):
    """Custom exception for embedding-related errors."""

    pass


def retry_with_backoff(
    max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 10.0
) -> Callable:
    """Decorator for retrying functions with exponential backoff.

    Args:
        max_retries: Maximum number of attempts (default: 3)
        base_delay: Initial delay in seconds (default: 1.0)
        max_delay: Maximum delay between retries (default: 10.0)

    Returns:
        Decorated function with retry logic
    """

    def decorator(func: Callable) -> Callable:
        @wraps(func)
        def wrapper(*args, **kwargs):
            for attempt in range(max_retries):
                try:
                    return func(*args, **kwargs)
                except (requests.RequestException, EmbeddingError):
                    if attempt == max_retries - 1:
                        raise
                    delay = min(base_delay * (2**attempt), max_delay)
                    name = getattr(func, "__qualname__", repr(func))
                    logger.debug(f"Retrying {name} in {delay:.1f}s (attempt {attempt + 1})")
                    time.sleep(delay)
            return func(*args, **kwargs)

        return wrapper

    return decorator


class OllamaProvider:
    """HTTP client for the Ollama embeddings API.

    Args:
        host: Ollama server host URL
        model: Embedding model name (must produce 384-dim vectors)
        timeout: Request timeout in seconds

    Example:
        >>> provider = OllamaProvider()
        >>> vector = provider.embed_query("wal checkpoint")
        >>> len(vector)
        384
    """

    def __init__(
        self,
        host: str = DEFAULT_OLLAMA_HOST,
        model: str = DEFAULT_OLLAMA_MODEL,
        timeout: int = 30,
    ):
        self.host = host.rstrip("/")
        self.model = model
        self.name = f"ollama:{model}"
        self.timeout = timeout
        self._session = requests.Session()

    def health_check(self) -> bool:
        """Check that the server responds and lists the configured model."""
        try:
            response = self._session.get(f"{self.host}/api/tags", timeout=self.timeout)
            response.raise_for_status()
            available = [m.get("name", "") for m in response.json().get("models", [])]
            return any(self.model in name for name in available)
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Ollama health check failed: {e}")
            return False

    @retry_with_backoff(max_retries=3, base_delay=1.0, max_delay=10.0)
    def _request_with_retry(self, payload: dict) -> requests.Response:
        """POST to /api/embeddings.

        Raises:
            EmbeddingError: If the request fails after all retries
        """
        try:
            response = self._session.post(
                f"{self.host}/api/embeddings",
                json=payload,
                timeout=self.timeout,
            )
            response.raise_for_status()
            return response

        except requests.Timeout as e:
            raise EmbeddingError(
                f"Request timeout after {self.timeout}s for model {self.model}"
            ) from e

        except requests.RequestException as e:
            raise EmbeddingError(f"Ollama API request failed: {e}") from e

    def _embed_single(self, text: str) -> list[float]:
        if not text or not text.strip():
            raise ValueError("Text cannot be empty")

        response = self._request_with_retry({"model": self.model, "prompt": text})
        try:
            embedding = response.json().get("embedding")
        except ValueError as e:
            raise EmbeddingError(f"Invalid JSON from Ollama: {e}") from e

        if not embedding:
            raise EmbeddingError("No embedding returned from Ollama API")
        if len(embedding) != EMBEDDING_DIM:
            raise EmbeddingError(
                f"Model {self.model} returned {len(embedding)} dimensions, "
                f"expected {EMBEDDING_DIM}"
            )
        return [float(x) for x in embedding]

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Embed documents one request at a time.

        Raises:
            EmbeddingError: If any embedding fails
            ValueError: If texts list is empty
        """
        if not texts:
            raise ValueError("Texts list cannot be empty")
        return [self._embed_single(text) for text in texts]

    def embed_query(self, text: str) -> list[float]:
        return self._embed_single(text)

    def close(self) -> None:
        """Close the HTTP session. Idempotent."""
        if self._session is not None:
            self._session.close()
            logger.debug("OllamaProvider session closed")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
