import httpx
import pytest

from core.errors import EmbeddingProviderError
from core.services import memory_embeddings as embeddings


@pytest.fixture()
def fake_provider(monkeypatch):
    calls = []

    def _install(status_code=200, vector=None):
        def handler(request):
            calls.append(request)
            if status_code != 200:
                return httpx.Response(status_code, json={"error": "nope"})
            return httpx.Response(200, json={"data": [{"embedding": vector or [0.1, 0.2]}]})

        monkeypatch.setattr(embeddings.config, "EMBEDDING_PROVIDER", "openai")
        monkeypatch.setattr(embeddings.config, "EMBEDDING_RETRY_MAX", 0)
        monkeypatch.setattr(embeddings, "http_client", httpx.Client(transport=httpx.MockTransport(handler)))
        monkeypatch.setattr(
            embeddings,
            "embedding_circuit_breaker",
            embeddings.EmbeddingCircuitBreaker(failure_threshold=2, cooldown_seconds=60),
        )
        return calls

    return _install


def test_embed_text_returns_vector(fake_provider):
    calls = fake_provider(vector=[0.5, 0.25])
    assert embeddings.embed_text_sync("Deploy notes") == [0.5, 0.25]
    assert len(calls) == 1


def test_embed_text_failures_open_breaker(fake_provider):
    calls = fake_provider(status_code=400)
    for _ in range(2):
        with pytest.raises(EmbeddingProviderError):
            embeddings.embed_text_sync("Deploy notes")
    assert embeddings.embedding_circuit_breaker.is_open()

    with pytest.raises(EmbeddingProviderError):
        embeddings.embed_text_sync("Deploy notes")
    assert len(calls) == 2


def test_precompute_skips_without_vector_backend(fake_provider, monkeypatch):
    calls = fake_provider()
    monkeypatch.setattr(embeddings.config, "VECTOR_BACKEND_EFFECTIVE", "none")
    assert embeddings.precompute_embedding("Title", "Body") is None
    assert calls == []


def test_precompute_swallows_provider_errors(fake_provider, monkeypatch):
    fake_provider(status_code=400)
    monkeypatch.setattr(embeddings.config, "VECTOR_BACKEND_EFFECTIVE", "pgvector")
    assert embeddings.precompute_embedding("Title", "Body") is None


def test_embedding_text_for_joins_title_and_body():
    assert embeddings.embedding_text_for("  Title ", " Body ") == "Title\n\nBody"
    assert embeddings.embedding_text_for("Title", None) == "Title"


def test_malformed_success_response_is_unavailable(monkeypatch):
    def handler(request):
        return httpx.Response(200, json={"error": "x"})

    breaker = embeddings.EmbeddingCircuitBreaker(failure_threshold=5, cooldown_seconds=60)
    monkeypatch.setattr(embeddings.config, "EMBEDDING_PROVIDER", "openai")
    monkeypatch.setattr(embeddings.config, "VECTOR_BACKEND_EFFECTIVE", "pgvector")
    monkeypatch.setattr(embeddings.config, "EMBEDDING_RETRY_MAX", 0)
    monkeypatch.setattr(embeddings, "http_client", httpx.Client(transport=httpx.MockTransport(handler)))
    monkeypatch.setattr(embeddings, "embedding_circuit_breaker", breaker)

    with pytest.raises(EmbeddingProviderError):
        embeddings.embed_text_sync("Deploy notes")
    assert embeddings.precompute_embedding("t", "b") is None
    assert breaker.status()["last_error"] == "malformed response"


def test_precompute_drops_wrong_dimension(fake_provider, monkeypatch):
    fake_provider(vector=[0.1, 0.2, 0.3])
    monkeypatch.setattr(embeddings.config, "VECTOR_BACKEND_EFFECTIVE", "pgvector")
    monkeypatch.setattr(embeddings.config, "EMBEDDING_DIM", 4)
    assert embeddings.precompute_embedding("Title", "Body") is None

    fake_provider(vector=[0.1, 0.2, 0.3, 0.4])
    assert embeddings.precompute_embedding("Title", "Body") == [0.1, 0.2, 0.3, 0.4]
