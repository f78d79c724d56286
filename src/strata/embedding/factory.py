"""Factory for creating embedding providers.

The 'none' backend returns no provider at all: the store then runs
keyword-only and the background loop leaves observations unvectorized.
"""

import logging
from typing import TYPE_CHECKING, Optional

from strata.config import EmbeddingBackend
from strata.constants import DEFAULT_OLLAMA_HOST, DEFAULT_OLLAMA_MODEL

if TYPE_CHECKING:
    from strata.embedding.provider import EmbeddingProvider

logger = logging.getLogger(__name__)

__all__ = ["create_embedding_provider"]


def create_embedding_provider(
    backend: EmbeddingBackend = "ollama",
    *,
    host: str = DEFAULT_OLLAMA_HOST,
    model: Optional[str] = None,
    timeout: int = 30,
) -> Optional["EmbeddingProvider"]:
    """Create an embedding provider for the configured backend.

    Args:
        backend: 'ollama' or 'none'
        host: Ollama server host URL
        model: Ollama model name, defaults to all-minilm (384-dim)
        timeout: Request timeout in seconds

    Returns:
        A provider, or None for the 'none' backend.

    Raises:
        ValueError: If an unknown backend is specified.
    """
    match backend:
        case "ollama":
            from strata.embedding.ollama_provider import OllamaProvider

            ollama_model = model or DEFAULT_OLLAMA_MODEL
            logger.info(
                f"Creating OllamaProvider with host={host}, "
                f"model={ollama_model}, timeout={timeout}"
            )
            return OllamaProvider(host=host, model=ollama_model, timeout=timeout)

        case "none":
            logger.info("Embedding disabled, running keyword-only")
            return None

        case _:
            raise ValueError(
                f"Unknown embedding backend: {backend!r}. Valid options are: 'ollama', 'none'"
            )
