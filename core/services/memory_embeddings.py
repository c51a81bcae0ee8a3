"""
Embedding provider client.

Hierarchy mutations never compute vectors themselves: callers precompute one
with ``precompute_embedding`` before the transaction and hand it through to
storage. A missing or failing provider yields ``None`` and the memory is
stored without a vector.
"""

from __future__ import annotations

import random
import threading
import time
from typing import List, Optional

import httpx

import core.config as config
from core.errors import EmbeddingProviderError, ValidationIssue
from core.services.memory_shared import logger
from core.validators import validate_embedding_text, validate_embedding_vector

OPENAI_EMBEDDINGS_URL = "https://api.openai.com/v1/embeddings"

http_client = None  # Reusable HTTP client for OpenAI API


def init_http_client():
    """Initialize HTTP client for OpenAI API calls."""
    global http_client
    headers = {"Content-Type": "application/json"}
    if config.OPENAI_API_KEY:
        headers["Authorization"] = f"Bearer {config.OPENAI_API_KEY}"
    http_client = httpx.Client(
        timeout=httpx.Timeout(config.EMBEDDING_TIMEOUT_SECONDS),
        limits=httpx.Limits(max_keepalive_connections=10, max_connections=100),
        headers=headers,
    )
    logger.info("HTTP client initialized")


def cleanup_http_client():
    """Clean up HTTP client on shutdown."""
    global http_client
    if http_client:
        http_client.close()
        http_client = None
        logger.info("HTTP client closed")


class EmbeddingCircuitBreaker:
    def __init__(self, failure_threshold: int, cooldown_seconds: int):
        self._failure_threshold = max(1, failure_threshold)
        self._cooldown_seconds = max(1, cooldown_seconds)
        self._lock = threading.Lock()
        self._consecutive_failures = 0
        self._cooldown_until = 0.0
        self._last_error: Optional[str] = None

    def is_open(self) -> bool:
        with self._lock:
            return time.time() < self._cooldown_until

    def record_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._cooldown_until = 0.0

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._consecutive_failures += 1
            self._last_error = error
            if self._consecutive_failures >= self._failure_threshold:
                self._cooldown_until = time.time() + self._cooldown_seconds

    def status(self) -> dict:
        with self._lock:
            return {
                "open": time.time() < self._cooldown_until,
                "consecutive_failures": self._consecutive_failures,
                "cooldown_until_epoch": int(self._cooldown_until) if self._cooldown_until else None,
                "last_error": self._last_error,
            }


embedding_circuit_breaker = EmbeddingCircuitBreaker(
    failure_threshold=config.EMBEDDING_FAILURE_THRESHOLD,
    cooldown_seconds=config.EMBEDDING_COOLDOWN_SECONDS,
)


def _raise_embedding_unavailable(detail: str) -> None:
    logger.warning("embedding_provider_unavailable", extra={"detail": detail})
    raise EmbeddingProviderError("embedding provider unavailable")


def _sleep_backoff(attempt: int) -> None:
    base = config.EMBEDDING_RETRY_BACKOFF_SECONDS * (2 ** attempt)
    jitter = random.uniform(0, config.EMBEDDING_RETRY_JITTER_SECONDS)
    time.sleep(base + jitter)


def embed_text_sync(text: str) -> List[float]:
    """Embed text with the configured provider, retrying transient failures."""
    validate_embedding_text(text)
    if config.EMBEDDING_PROVIDER == "none":
        _raise_embedding_unavailable("embedding provider disabled")
    if embedding_circuit_breaker.is_open():
        _raise_embedding_unavailable("circuit breaker open")
    if http_client is None:
        init_http_client()

    for attempt in range(config.EMBEDDING_RETRY_MAX + 1):
        try:
            response = http_client.post(
                OPENAI_EMBEDDINGS_URL,
                json={
                    "model": config.EMBEDDING_MODEL,
                    "input": text,
                },
            )
        except httpx.RequestError:
            if attempt >= config.EMBEDDING_RETRY_MAX:
                embedding_circuit_breaker.record_failure("request error")
                _raise_embedding_unavailable("request error")
            _sleep_backoff(attempt)
            continue

        if response.status_code in {429, 500, 502, 503, 504}:
            if attempt >= config.EMBEDDING_RETRY_MAX:
                embedding_circuit_breaker.record_failure(f"status {response.status_code}")
                _raise_embedding_unavailable(f"status {response.status_code}")
            _sleep_backoff(attempt)
            continue
        if response.status_code >= 400:
            embedding_circuit_breaker.record_failure(f"status {response.status_code}")
            _raise_embedding_unavailable(f"status {response.status_code}")

        try:
            vector = response.json()["data"][0]["embedding"]
            if not isinstance(vector, list):
                raise TypeError("embedding is not a list")
        except (ValueError, KeyError, IndexError, TypeError):
            embedding_circuit_breaker.record_failure("malformed response")
            _raise_embedding_unavailable("malformed response")
        embedding_circuit_breaker.record_success()
        return vector


def embedding_text_for(title: str, body: Optional[str]) -> str:
    text = title.strip()
    if body and body.strip():
        text = f"{text}\n\n{body.strip()}"
    return text[: config.MAX_EMBEDDING_TEXT_LENGTH]


def precompute_embedding(title: str, body: Optional[str]) -> Optional[List[float]]:
    """Vector for a new memory, or None when the provider is off or failing."""
    if config.EMBEDDING_PROVIDER == "none" or config.VECTOR_BACKEND_EFFECTIVE != "pgvector":
        return None
    if not isinstance(title, str) or not title.strip():
        return None
    try:
        vector = embed_text_sync(embedding_text_for(title, body))
    except EmbeddingProviderError:
        logger.warning("memory_embedding_skipped", extra={"reason": "provider_unavailable"})
        return None
    try:
        validate_embedding_vector(vector, "embedding", config.EMBEDDING_DIM)
    except ValidationIssue as exc:
        logger.warning("memory_embedding_skipped", extra={"reason": exc.error_type})
        return None
    return vector
