# RagKeeper Embeddings Module
# Batched embedding generation with a keyword-overlap fallback

import base64
import logging
import re
from abc import ABC, abstractmethod
from typing import List, Optional, Sequence

import numpy as np
from openai import AsyncAzureOpenAI, AsyncOpenAI

from config.settings import EmbeddingProvider, EmbeddingSettings
from observability.metrics import record_embedding_metrics

logger = logging.getLogger(__name__)

# Kanji, katakana and ASCII alphanumeric runs of two or more characters
_KEYWORD_RE = re.compile(r'[\u4e00-\u9fff]{2,}|[\u30a0-\u30ff]{2,}|[a-zA-Z0-9]{2,}')
_STORAGE_DTYPE = np.dtype('<f4')


class EmbeddingBackend(ABC):
    """External service that turns texts into vectors."""

    model: str = ""

    @abstractmethod
    async def embed(self, texts: List[str]) -> List[List[float]]:
        """Return one vector per input text, in input order."""


class OpenAIEmbeddingBackend(EmbeddingBackend):
    """OpenAI or Azure OpenAI embeddings endpoint."""

    def __init__(self, settings: EmbeddingSettings):
        self.model = settings.model
        self.dimensions = settings.dimensions
        if settings.provider == EmbeddingProvider.AZURE:
            self.client = AsyncAzureOpenAI(
                api_key=settings.api_key,
                azure_endpoint=settings.endpoint,
                api_version=settings.api_version,
                timeout=settings.timeout_seconds,
                max_retries=0,
            )
        else:
            self.client = AsyncOpenAI(
                api_key=settings.api_key,
                base_url=settings.endpoint,
                timeout=settings.timeout_seconds,
                max_retries=0,
            )
        logger.info(f"Embedding backend: {settings.provider.value} model={self.model}")

    async def embed(self, texts: List[str]) -> List[List[float]]:
        response = await self.client.embeddings.create(model=self.model, input=texts)
        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise ValueError(f"Embedding service returned {len(data)} vectors for {len(texts)} inputs")
        return [item.embedding for item in data]


def build_embedding_backend(settings: EmbeddingSettings) -> Optional[EmbeddingBackend]:
    """Create the configured backend, or None when embeddings are disabled."""
    if not settings.configured:
        logger.info("No embedding backend configured, retrieval will use keyword scoring")
        return None
    return OpenAIEmbeddingBackend(settings)


class EmbeddingGenerator:
    """Generates embeddings in fixed-size batches.

    Output always lines up one-to-one with the input: a text that could not
    be embedded yields ``None`` rather than being dropped.
    """

    def __init__(self, backend: Optional[EmbeddingBackend] = None, batch_size: int = 16):
        self.backend = backend
        self.batch_size = max(1, batch_size)

    @property
    def available(self) -> bool:
        return self.backend is not None

    async def embed_many(self, texts: Sequence[str]) -> List[Optional[np.ndarray]]:
        """Embed ``texts`` in batches, retrying a failed batch item by item.

        Args:
            texts: Texts to embed; empty strings are sent as a single space

        Returns:
            List of float32 vectors or None, same length and order as ``texts``
        """
        if self.backend is None:
            return [None] * len(texts)

        prepared = [text if text else " " for text in texts]
        results: List[Optional[np.ndarray]] = []

        for start in range(0, len(prepared), self.batch_size):
            batch = prepared[start:start + self.batch_size]
            try:
                vectors = await self.backend.embed(batch)
                results.extend(np.asarray(v, dtype=np.float32) for v in vectors)
                record_embedding_metrics("batch", success=True)
            except Exception as e:
                logger.warning(f"Embedding batch at offset {start} failed, retrying items individually: {e}")
                record_embedding_metrics("batch", success=False)
                for offset, text in enumerate(batch):
                    results.append(await self._embed_single(text, start + offset))

        return results

    async def embed_one(self, text: str) -> Optional[np.ndarray]:
        vectors = await self.embed_many([text])
        return vectors[0]

    async def _embed_single(self, text: str, position: int) -> Optional[np.ndarray]:
        try:
            vectors = await self.backend.embed([text])
            record_embedding_metrics("item", success=True)
            return np.asarray(vectors[0], dtype=np.float32)
        except Exception as e:
            logger.error(f"Embedding failed for item {position}: {e}")
            record_embedding_metrics("item", success=False, failed_items=1)
            return None


def encode_vector(vector: Sequence[float]) -> str:
    """Encode a vector as base64 of little-endian float32 bytes."""
    return base64.b64encode(np.asarray(vector, dtype=_STORAGE_DTYPE).tobytes()).decode('ascii')


def decode_vector(encoded: str) -> np.ndarray:
    """Exact inverse of :func:`encode_vector`."""
    return np.frombuffer(base64.b64decode(encoded), dtype=_STORAGE_DTYPE).astype(np.float32)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Calculate cosine similarity between two vectors.

    Returns 0.0 for vectors of different length or with a zero norm.
    """
    a = np.asarray(a, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)
    if a.shape != b.shape:
        return 0.0

    norm_a = np.linalg.norm(a)
    norm_b = np.linalg.norm(b)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    return float(np.dot(a, b) / (norm_a * norm_b))


def tokenize_keywords(text: str) -> List[str]:
    """Unique lower-cased keyword runs, in order of first appearance."""
    return list(dict.fromkeys(token.lower() for token in _KEYWORD_RE.findall(text)))


def keyword_similarity(query: str, text: str) -> float:
    """Fraction of the query's keywords found as substrings of ``text``."""
    keywords = tokenize_keywords(query)
    if not keywords:
        return 0.0
    lowered = text.lower()
    hits = sum(1 for keyword in keywords if keyword in lowered)
    return hits / len(keywords)
