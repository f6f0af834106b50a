"""Explicit model and embedding provider configuration, passed into each call."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel

from clinical_rag.config import Settings, settings


class ConfigurationError(Exception):
    """Raised when the selected provider is missing its model, endpoint or credentials."""

    def __init__(self, code: str, message: str) -> None:
        self.code = code
        self.message = message
        super().__init__(message)


class ProviderConfig(BaseModel):
    """Chat model configuration for one request."""

    provider: Literal["claude", "ollama"] = "claude"
    model: str = ""
    rerank_model: str = ""
    ollama_endpoint: str = ""
    temperature: float = 0.2
    skip_reranking: bool = False

    @classmethod
    def from_settings(cls, source: Settings = settings) -> ProviderConfig:
        if source.chat_provider == "ollama":
            return cls(
                provider="ollama",
                model=source.ollama_model,
                rerank_model=source.rerank_model,
                ollama_endpoint=source.ollama_endpoint,
                skip_reranking=source.disable_ollama_reranking,
            )
        if source.chat_provider != "claude":
            raise ConfigurationError(
                code="UNKNOWN_PROVIDER",
                message=f"Unknown chat provider {source.chat_provider!r}",
            )
        return cls(
            provider="claude",
            model=source.ai_model,
            rerank_model=source.rerank_model,
        )

    def validate_ready(self) -> None:
        """Fail fast before any network call when the config cannot work."""
        if not self.model:
            raise ConfigurationError(
                code="MISSING_MODEL",
                message=f"No model configured for provider {self.provider!r}",
            )
        if self.provider == "ollama" and not self.ollama_endpoint:
            raise ConfigurationError(
                code="MISSING_ENDPOINT",
                message="Ollama provider requires an endpoint URL",
            )

    def for_reranking(self) -> ProviderConfig:
        """Same provider, switched to the dedicated reranking model when one is set."""
        if self.rerank_model:
            return self.model_copy(update={"model": self.rerank_model})
        return self


class EmbeddingConfig(BaseModel):
    """Google GenAI embedding configuration."""

    model: str
    dimensions: int
    api_key: str = ""
    project: str = ""
    location: str = "us-central1"

    @classmethod
    def from_settings(cls, source: Settings = settings) -> EmbeddingConfig:
        return cls(
            model=source.embedding_model,
            dimensions=source.embedding_dimensions,
            api_key=source.google_api_key,
            project=source.gcp_project_id,
            location=source.gcp_location,
        )

    def validate_ready(self) -> None:
        if not self.model:
            raise ConfigurationError(
                code="MISSING_EMBEDDING_MODEL",
                message="No embedding model configured",
            )
        if not self.api_key and not self.project:
            raise ConfigurationError(
                code="MISSING_CREDENTIALS",
                message="Set GOOGLE_API_KEY or GCP_PROJECT_ID for embeddings",
            )
