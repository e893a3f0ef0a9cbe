"""Tests for embedding providers."""

import numpy as np
import pytest

from pattern_nexus.embeddings import SimpleEmbeddings, create_embeddings
from pattern_nexus.errors import ConfigError


def cosine(a, b):
    return float(np.dot(a, b) / (np.linalg.norm(a) * np.linalg.norm(b)))


def test_factory():
    assert isinstance(create_embeddings("simple", dimension=64), SimpleEmbeddings)
    with pytest.raises(ConfigError):
        create_embeddings("openai")


def test_vectors_are_normalized_and_deterministic():
    embeddings = SimpleEmbeddings(dimension=128)
    first = embeddings.embed("variable naming camelCase")

    assert len(first) == 128
    assert np.linalg.norm(first) == pytest.approx(1.0)
    assert embeddings.embed("variable naming camelCase") == first
    assert embeddings.embed("   ") == [0.0] * 128


def test_identifier_styles_land_close():
    embeddings = SimpleEmbeddings()
    camel, snake, other = embeddings.embed_batch(["errorHandler", "error_handler", "userName"])

    assert cosine(camel, snake) > cosine(camel, other)


def test_local_descriptions_become_prose():
    from pattern_nexus.embeddings.local import prose

    assert prose("errorHandler in user_service") == "error handler in user service"


def test_local_provider_requires_extra(monkeypatch):
    import sys

    monkeypatch.setitem(sys.modules, "sentence_transformers", None)
    with pytest.raises(ConfigError, match="pattern-nexus\\[local\\]"):
        create_embeddings("local")
