"""
Embedding Service for Freight Quote Search

Turns a search query into a fixed-length vector through an external provider.
The quotes collection was vectorized with OpenAI embeddings, so OpenAI is the
default; Voyage AI and Cohere are available for stores built with them.

Architecture:
    BaseEmbeddingService  -- validation, error classification, embed()
        OpenAIEmbeddingService    -- OpenAI text-embedding-3 provider
        VoyageEmbeddingService    -- Voyage AI provider
        CohereEmbeddingService    -- Cohere embed-v3 provider

Every failure surfaces as EmbeddingUnavailable. Provider SDK retries are
disabled: one outbound call per embed().
"""

import os
import logging
from typing import Optional, Union
from dataclasses import dataclass

from .errors import EmbeddingUnavailable

logger = logging.getLogger(__name__)


@dataclass
class EmbeddingConfig:
    """Configuration for embedding service."""
    provider: str = "openai"  # "openai", "voyage" or "cohere"
    model: str = "text-embedding-3-small"
    dimensions: int = 1536
    timeout_seconds: float = 10.0
    api_key: Optional[str] = None  # falls back to the provider's env var

    @classmethod
    def from_env(cls) -> "EmbeddingConfig":
        provider = os.getenv("EMBEDDING_PROVIDER", "openai").lower()
        defaults = PROVIDER_DEFAULTS.get(provider, PROVIDER_DEFAULTS["openai"])
        return cls(
            provider=provider,
            model=os.getenv("EMBEDDING_MODEL", defaults["model"]),
            dimensions=int(os.getenv("EMBEDDING_DIMENSIONS", defaults["dimensions"])),
            timeout_seconds=float(os.getenv("EMBEDDING_TIMEOUT", "10")),
        )


PROVIDER_DEFAULTS = {
    "openai": {"model": "text-embedding-3-small", "dimensions": 1536},
    "voyage": {"model": "voyage-3", "dimensions": 1024},
    "cohere": {"model": "embed-english-v3.0", "dimensions": 1024},
}


class BaseEmbeddingService:
    """
    Base class for API-based embedding services.

    Subclasses only need to implement:
    - _init_client(): Initialize the provider-specific API client
    - _request_embedding(text): One provider call returning one vector

    And set these class attributes:
    - _provider_name: Human-readable provider name for error messages
    - _env_var_name: Environment variable name for the API key
    """

    _provider_name: str = "Base"
    _env_var_name: str = ""

    def __init__(self, config: Optional[EmbeddingConfig] = None):
        self.config = config or EmbeddingConfig()
        self._client = None
        self._init_client()

    def _init_client(self):
        """Initialize the provider-specific API client. Must be overridden by subclasses."""
        raise NotImplementedError("Subclasses must implement _init_client()")

    def _request_embedding(self, text: str) -> list[float]:
        raise NotImplementedError("Subclasses must implement _request_embedding()")

    def _api_key(self) -> Optional[str]:
        return self.config.api_key or os.getenv(self._env_var_name)

    @property
    def is_available(self) -> bool:
        return self._client is not None

    def embed(self, text: str) -> list[float]:
        """
        Generate the embedding for a search query.

        Args:
            text: Non-empty query text

        Returns:
            Embedding vector

        Raises:
            EmbeddingUnavailable: empty text, missing client, provider error,
                timeout or empty response
        """
        if not text or not text.strip():
            raise EmbeddingUnavailable("Cannot embed empty text", provider=self._provider_name)

        if not self._client:
            raise EmbeddingUnavailable(
                f"{self._provider_name} client not initialized. Check {self._env_var_name}.",
                provider=self._provider_name,
            )

        try:
            vector = self._request_embedding(text)
        except Exception as e:
            logger.error(f"{self._provider_name} embedding failed: {e}")
            raise EmbeddingUnavailable(
                f"{self._provider_name} embedding failed: {e}",
                provider=self._provider_name,
            ) from e

        if not vector:
            raise EmbeddingUnavailable(
                f"{self._provider_name} returned an empty embedding",
                provider=self._provider_name,
            )
        return list(vector)

    @property
    def dimensions(self) -> int:
        """Return embedding dimensions."""
        return self.config.dimensions


class OpenAIEmbeddingService(BaseEmbeddingService):
    """Embeddings from OpenAI's text-embedding-3 family."""

    _provider_name = "OpenAI"
    _env_var_name = "OPENAI_API_KEY"

    def _init_client(self):
        """Initialize the OpenAI client."""
        api_key = self._api_key()

        if not api_key:
            logger.warning(
                "OPENAI_API_KEY not found. Semantic search will fall back to keyword search."
            )
            return

        try:
            from openai import OpenAI
            self._client = OpenAI(
                api_key=api_key,
                timeout=self.config.timeout_seconds,
                max_retries=0,
            )
            logger.info(f"OpenAI client initialized with model {self.config.model}")
        except ImportError:
            logger.error("openai package not installed. Run: pip install openai")
            raise

    def _request_embedding(self, text: str) -> list[float]:
        response = self._client.embeddings.create(model=self.config.model, input=text)
        if not response.data:
            return []
        return response.data[0].embedding


class VoyageEmbeddingService(BaseEmbeddingService):
    """Embedding service using Voyage AI models."""

    _provider_name = "Voyage AI"
    _env_var_name = "VOYAGE_API_KEY"

    def _init_client(self):
        """Initialize the Voyage AI client."""
        api_key = self._api_key()

        if not api_key:
            logger.warning(
                "VOYAGE_API_KEY not found. Semantic search will fall back to keyword search."
            )
            return

        try:
            import voyageai
            self._client = voyageai.Client(
                api_key=api_key,
                max_retries=0,
                timeout=self.config.timeout_seconds,
            )
            logger.info(f"Voyage AI client initialized with model {self.config.model}")
        except ImportError:
            logger.error("voyageai package not installed. Run: pip install voyageai")
            raise

    def _request_embedding(self, text: str) -> list[float]:
        response = self._client.embed(
            texts=[text],
            model=self.config.model,
            input_type="query",
        )
        return response.embeddings[0] if response.embeddings else []


class CohereEmbeddingService(BaseEmbeddingService):
    """Generates embeddings using Cohere's embed-v3 model."""

    _provider_name = "Cohere"
    _env_var_name = "COHERE_API_KEY"

    def _init_client(self):
        """Initialize the Cohere client."""
        api_key = self._api_key()

        if not api_key:
            logger.warning(
                "COHERE_API_KEY not found. Semantic search will fall back to keyword search."
            )
            return

        try:
            import cohere
            self._client = cohere.Client(api_key, timeout=self.config.timeout_seconds)
            logger.info(f"Cohere client initialized with model {self.config.model}")
        except ImportError:
            logger.error("Cohere package not installed. Run: pip install cohere")
            raise

    def _request_embedding(self, text: str) -> list[float]:
        response = self._client.embed(
            texts=[text],
            model=self.config.model,
            input_type="search_query",
        )
        return response.embeddings[0] if response.embeddings else []


EmbeddingProvider = Union[OpenAIEmbeddingService, VoyageEmbeddingService, CohereEmbeddingService]

_PROVIDERS = {
    "openai": OpenAIEmbeddingService,
    "voyage": VoyageEmbeddingService,
    "cohere": CohereEmbeddingService,
}


def get_embedding_service(
    provider: Optional[str] = None,
    config: Optional[EmbeddingConfig] = None,
) -> EmbeddingProvider:
    """
    Factory function to get appropriate embedding service.

    Args:
        provider: "openai" (default), "voyage" or "cohere". Overrides config.provider.
        config: Optional configuration. Read from the environment if not provided.

    Returns:
        Configured embedding service
    """
    config = config or EmbeddingConfig.from_env()
    name = (provider or config.provider).lower()

    if name not in _PROVIDERS:
        raise ValueError(f"Unknown embedding provider: {name}. Expected one of {sorted(_PROVIDERS)}")

    if name != config.provider:
        defaults = PROVIDER_DEFAULTS[name]
        config = EmbeddingConfig(
            provider=name,
            model=defaults["model"],
            dimensions=defaults["dimensions"],
            timeout_seconds=config.timeout_seconds,
            api_key=config.api_key,
        )

    return _PROVIDERS[name](config)
