"""Embedding providers for Strata.

Vectors come from an external model; this package only wraps the call.

Available backends:
    - ollama: Remote embedding using an Ollama server
    - none: No embedder, keyword-only operation

Usage:
    >>> from strata.embedding import create_embedding_provider
    >>> provider = create_embedding_provider("ollama")
    >>> vector = provider.embed_query("sqlite busy timeout")
"""

from .factory import create_embedding_provider
from .ollama_provider import EmbeddingError, OllamaProvider
from .provider import EmbeddingProvider

__all__ = [
    "EmbeddingError",
    "EmbeddingProvider",
    "OllamaProvider",
    "create_embedding_provider",
]
