"""
Simple embedding provider - no ML dependencies.

Deterministic embeddings from hashed character n-grams plus identifier
words, so "errorHandler" and "error_handler" land close together. Good
enough to rank pattern descriptions offline.
"""

import hashlib
import re
from typing import List

import numpy as np

from ..patterns.naming import split_words


class SimpleEmbeddings:
    """
    Hash-based embeddings over pattern descriptions.

    Builds the vector from:
    1. hashed character n-grams of the lowercased text
    2. hashed identifier words (camelCase/snake_case split), weighted higher
    3. unit-length normalization
    """

    def __init__(
        self,
        dimension: int = 256,
        ngram_range: tuple = (3, 4),
        **kwargs  # model_name etc. are accepted and ignored
    ):
        """
        Args:
            dimension: Output embedding dimension
            ngram_range: Range of n-gram sizes to use
        """
        self.dimension = dimension
        self.ngram_range = ngram_range

    @staticmethod
    def _words(text: str) -> List[str]:
        words = []
        for token in re.findall(r"[A-Za-z][A-Za-z0-9_\-]*", text):
            words.extend(split_words(token) or [token.lower()])
        return words

    def _bucket(self, token: str, salt: str = "") -> tuple:
        h = hashlib.sha256(f"{salt}{token}".encode()).hexdigest()
        pos = int(h[:8], 16) % self.dimension
        val = (int(h[8:16], 16) / (16**8)) * 2 - 1  # Range [-1, 1]
        return pos, val

    def embed(self, text: str) -> List[float]:
        if not text or not text.strip():
            return [0.0] * self.dimension

        embedding = np.zeros(self.dimension)
        words = self._words(text)
        joined = " ".join(words)

        for n in range(self.ngram_range[0], self.ngram_range[1] + 1):
            for i in range(len(joined) - n + 1):
                pos, val = self._bucket(joined[i:i + n], "ngram:")
                embedding[pos] += val

        for word in words:
            pos, val = self._bucket(word, "word:")
            embedding[pos] += val * 3

        norm = np.linalg.norm(embedding)
        if norm > 0:
            embedding = embedding / norm
        return embedding.tolist()

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """Embed multiple texts."""
        return [self.embed(text) for text in texts]
