"""Embedding providers: deterministic hash-based and VoyageAI"""

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import voyageai
from voyageai import error as voyage_error

from app.config import settings

logger = logging.getLogger(__name__)

# Fields that never influence a record's embedding
EXCLUDED_FIELDS = {"id", "created_at", "updated_at", "embedding"}

# VoyageAI models that accept output_dimension, and the sizes they offer
FLEXIBLE_DIMENSION_MODELS = {"voyage-3.5", "voyage-3.5-lite", "voyage-3-large", "voyage-code-3"}
VOYAGE_OUTPUT_DIMENSIONS = (256, 512, 1024, 2048)


class EmbeddingProviderError(Exception):
    """Embedding backend failed to produce a vector"""


class EmbeddingAuthenticationError(EmbeddingProviderError):
    """Embedding backend rejected the configured credentials"""


class EmbeddingTimeoutError(EmbeddingProviderError):
    """Embedding backend did not answer in time"""


class EmbeddingInputTooLongError(EmbeddingProviderError):
    """Input exceeded the embedding backend's length limit"""


class EmbeddingDecodeError(ValueError):
    """Stored embedding could not be decoded into a vector"""


class EmbeddingProvider(ABC):
    """Capability turning text into a fixed-length vector"""

    @property
    @abstractmethod
    def dimension(self) -> int:
        ...

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        ...

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        return [self.embed(text) for text in texts]

    def embed_query(self, text: str) -> List[float]:
        """Embed a search query; providers may treat queries differently"""
        return self.embed(text)


def canonicalize(data: Dict[str, Any]) -> str:
    """
    Build a stable string form of a record for hashing

    Drops identifier/timestamp/embedding fields and nulls, lower-cases and
    trims strings, and sorts keys so key order never matters.
    """
    clean = {}
    for key in sorted(data):
        value = data[key]
        if key in EXCLUDED_FIELDS or value is None:
            continue
        if isinstance(value, str):
            value = value.strip().lower()
        clean[key] = value
    return json.dumps(clean, sort_keys=True, ensure_ascii=False, default=str)


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic embeddings derived from a hash of the canonical input"""

    def __init__(self, dimension: Optional[int] = None):
        self._dimension = dimension or settings.embedding_dimension

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> List[float]:
        return self.embed_record({"text": text})

    def embed_record(self, data: Dict[str, Any]) -> List[float]:
        digest = hashlib.shake_256(canonicalize(data).encode("utf-8")).digest(
            self._dimension
        )
        # Each byte maps into [0, 1)
        return [byte / 256.0 for byte in digest]


class VoyageEmbeddingProvider(EmbeddingProvider):
    """Embedding provider backed by the VoyageAI API"""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        dimension: Optional[int] = None,
        max_chars: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.model = model or settings.voyage_model
        self._dimension = dimension or settings.embedding_dimension
        if self.model in FLEXIBLE_DIMENSION_MODELS and self._dimension not in VOYAGE_OUTPUT_DIMENSIONS:
            raise ValueError(
                f"{self.model} cannot produce {self._dimension}-dimensional embeddings; "
                f"set EMBEDDING_DIMENSION to one of {VOYAGE_OUTPUT_DIMENSIONS}"
            )

        self.client = voyageai.Client(api_key=api_key or settings.voyage_api_key)
        self.max_chars = max_chars or settings.embedding_max_chars
        self.batch_size = batch_size or settings.embedding_batch_size

    @property
    def dimension(self) -> int:
        return self._dimension

    def embed(self, text: str) -> List[float]:
        return self._embed([self._truncate(text)], input_type="document")[0]

    def embed_query(self, text: str) -> List[float]:
        return self._embed([self._truncate(text)], input_type="query")[0]

    def embed_batch(self, texts: List[str]) -> List[List[float]]:
        """
        Embed many texts, splitting into provider-sized batches

        Args:
            texts: Texts to embed

        Returns:
            Embeddings in the same order as the input
        """
        embeddings = []
        for offset in range(0, len(texts), self.batch_size):
            batch = [self._truncate(t) for t in texts[offset:offset + self.batch_size]]
            embeddings.extend(self._embed(batch, input_type="document"))
        return embeddings

    def _truncate(self, text: str) -> str:
        if len(text) > self.max_chars:
            logger.warning(
                f"Truncating text from {len(text)} to {self.max_chars} characters for embedding"
            )
            return text[:self.max_chars]
        return text

    def _embed(self, texts: List[str], input_type: str) -> List[List[float]]:
        options = {}
        if self.model in FLEXIBLE_DIMENSION_MODELS:
            options["output_dimension"] = self._dimension
        try:
            result = self.client.embed(texts, model=self.model, input_type=input_type, **options)
        except voyage_error.AuthenticationError as e:
            raise EmbeddingAuthenticationError(
                "Embedding provider rejected the API key; check VOYAGE_API_KEY"
            ) from e
        except voyage_error.Timeout as e:
            raise EmbeddingTimeoutError(f"Embedding request timed out: {e}") from e
        except voyage_error.InvalidRequestError as e:
            message = str(e).lower()
            if "length" in message or "token" in message:
                raise EmbeddingInputTooLongError(
                    "Text too long to embed; reduce the document size"
                ) from e
            raise EmbeddingProviderError(f"Embedding request rejected: {e}") from e
        except voyage_error.VoyageError as e:
            raise EmbeddingProviderError(f"Embedding generation failed: {e}") from e

        embeddings = [list(vector) for vector in result.embeddings]
        if len(embeddings) != len(texts):
            raise EmbeddingProviderError(
                f"Expected {len(texts)} embeddings, provider returned {len(embeddings)}"
            )
        for vector in embeddings:
            if len(vector) != self._dimension:
                raise EmbeddingProviderError(
                    f"Provider returned dimension {len(vector)}, expected {self._dimension}"
                )
        return embeddings


def create_embedding_provider() -> EmbeddingProvider:
    """Build the embedding provider selected by configuration"""
    provider = settings.embedding_provider.strip().lower()

    if provider == "voyage":
        if settings.voyage_api_key:
            logger.info(f"Using VoyageAI embeddings ({settings.voyage_model})")
            return VoyageEmbeddingProvider()
        logger.warning("VOYAGE_API_KEY not set, falling back to hash embeddings")
    elif provider != "hash":
        raise ValueError(f"Unknown embedding provider: {settings.embedding_provider}")

    return HashEmbeddingProvider()


def decode_embedding(value: Any, dimension: Optional[int] = None) -> Optional[List[float]]:
    """
    Decode a stored embedding into a list of floats

    Accepts sequences, numpy arrays (pgvector) and JSON-encoded strings.

    Raises:
        EmbeddingDecodeError: value is unparsable or has the wrong dimension
    """
    if value is None:
        return None

    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise EmbeddingDecodeError(f"Invalid embedding JSON: {e}") from e
    elif hasattr(value, "tolist"):
        value = value.tolist()

    if not isinstance(value, (list, tuple)):
        raise EmbeddingDecodeError(f"Unsupported embedding type: {type(value).__name__}")

    try:
        vector = [float(x) for x in value]
    except (TypeError, ValueError) as e:
        raise EmbeddingDecodeError(f"Non-numeric embedding value: {e}") from e

    if dimension is not None and len(vector) != dimension:
        raise EmbeddingDecodeError(
            f"Embedding has dimension {len(vector)}, expected {dimension}"
        )
    return vector


def cosine_similarity(
    embedding1: Optional[Sequence[float]], embedding2: Optional[Sequence[float]]
) -> float:
    """Cosine similarity in [-1, 1]; 0.0 when either side is missing or zero"""
    if embedding1 is None or embedding2 is None:
        return 0.0

    vec1 = np.asarray(embedding1, dtype=float)
    vec2 = np.asarray(embedding2, dtype=float)
    if vec1.shape != vec2.shape:
        raise ValueError("Embeddings must have the same dimension")

    denominator = np.linalg.norm(vec1) * np.linalg.norm(vec2)
    if denominator == 0:
        return 0.0
    return float(np.clip(np.dot(vec1, vec2) / denominator, -1.0, 1.0))
