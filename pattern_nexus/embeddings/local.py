"""
Sentence-transformer embeddings for pattern descriptions.

Identifiers in a description ("errorHandler", "user_service") are split into
plain words before encoding, since sentence models are trained on prose.
Install with the ``local`` extra; works offline once the model is cached.
"""

import logging
import re
from typing import Dict, List

from ..errors import ConfigError
from ..patterns.naming import split_words

logger = logging.getLogger(__name__)

_IDENTIFIER = re.compile(r"[A-Za-z][A-Za-z0-9_\-]*")


def prose(text: str) -> str:
    """Rewrite identifiers as space-separated lowercase words."""
    return _IDENTIFIER.sub(lambda m: " ".join(split_words(m.group(0))) or m.group(0).lower(), text)


class LocalEmbeddings:
    """
    Embeds aggregation descriptions with a sentence-transformers model.

    Vectors are unit length, so a dot product is the cosine score. The model
    is loaded on first use; descriptions already seen are served from a
    small in-memory cache (the same aggregations are ranked over and over).
    """

    def __init__(self, model_name: str = "all-MiniLM-L6-v2", cache_size: int = 4096, **kwargs):
        try:
            import sentence_transformers  # noqa: F401
        except ImportError:
            raise ConfigError(
                "The 'local' embedding provider requires: pip install 'pattern-nexus[local]'"
            )
        self.model_name = model_name
        self.cache_size = cache_size
        self._model = None
        self._cache: Dict[str, List[float]] = {}

    @property
    def model(self):
        if self._model is None:
            from sentence_transformers import SentenceTransformer
            self._model = SentenceTransformer(self.model_name)
            logger.info(
                f"Loaded embedding model {self.model_name} "
                f"(dim={self._model.get_sentence_embedding_dimension()})"
            )
        return self._model

    @property
    def dimension(self) -> int:
        return self.model.get_sentence_embedding_dimension()

    def embed(self, text: str) -> List[float]:
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: List[str], batch_size: int = 32) -> List[List[float]]:
        missing = [t for t in dict.fromkeys(texts) if t not in self._cache]
        if missing:
            vectors = self.model.encode(
                [prose(t) for t in missing],
                batch_size=batch_size,
                convert_to_numpy=True,
                normalize_embeddings=True,
            )
            if len(self._cache) + len(missing) > self.cache_size:
                self._cache.clear()
            for text, vector in zip(missing, vectors):
                self._cache[text] = vector.tolist()
            logger.debug(f"Encoded {len(missing)} descriptions ({len(texts) - len(missing)} cached)")
        return [self._cache[t] for t in texts]
