"""
Embedding providers for semantic ranking of aggregations.

Providers:
- "simple": Hash-based embeddings over identifier words and n-grams (just numpy)
- "local": Sentence-transformers (better quality, requires torch)
"""

import logging

from ..errors import ConfigError
from .simple import SimpleEmbeddings

logger = logging.getLogger(__name__)

__all__ = ["SimpleEmbeddings", "create_embeddings"]


def create_embeddings(provider: str = "simple", **kwargs):
    """
    Factory function to create embedding provider.

    Args:
        provider: "simple" (default) or "local"
        **kwargs: model_name, dimension, etc.
    """
    if provider == "simple":
        return SimpleEmbeddings(**kwargs)
    elif provider == "local":
        from .local import LocalEmbeddings
        return LocalEmbeddings(**kwargs)
    else:
        raise ConfigError(f"Unknown embedding provider: {provider}")
