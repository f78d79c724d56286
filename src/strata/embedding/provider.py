"""Embedding provider protocol.

The store never computes vectors itself. Anything with these methods can
supply them; vectors are checked only for type and width.

API Contract:
    - embed_texts(texts: list[str]) -> list[list[float]] - batch, documents
    - embed_query(text: str) -> list[float] - single search query
"""

from typing import Protocol, runtime_checkable

__all__ = ["EmbeddingProvider"]


@runtime_checkable
class EmbeddingProvider(Protocol):
    """Protocol defining the interface for embedding providers.

    Required Methods:
        embed_texts: Generate embeddings for multiple texts (batch)
        embed_query: Generate embedding for a single query
        health_check: Check if the provider is ready
        close: Release resources

    Example:
        >>> class CustomProvider:
        ...     name = "custom"
        ...     def embed_texts(self, texts: list[str]) -> list[list[float]]:
        ...         ...
        ...     def embed_query(self, text: str) -> list[float]:
        ...         ...
        ...     def health_check(self) -> bool:
        ...         ...
        ...     def close(self) -> None:
        ...         ...
        >>> isinstance(CustomProvider(), EmbeddingProvider)
        True
    """

    name: str

    def embed_texts(self, texts: list[str]) -> list[list[float]]:
        """Generate embeddings for multiple texts (documents).

        Args:
            texts: List of input texts to embed. Must not be empty.

        Returns:
            One 384-float vector per input, in input order.

        Raises:
            EmbeddingError: If embedding generation fails.
            ValueError: If texts list is empty.
        """
        ...

    def embed_query(self, text: str) -> list[float]:
        """Generate embedding for a single query text.

        Raises:
            EmbeddingError: If embedding generation fails.
            ValueError: If text is empty.
        """
        ...

    def health_check(self) -> bool:
        """Return True if the provider is available and ready."""
        ...

    def close(self) -> None:
        """Release resources. Must be idempotent."""
        ...
