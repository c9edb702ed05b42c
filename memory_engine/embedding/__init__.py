from __future__ import annotations

from typing import Optional

from ..config import EmbeddingConfig, resolve_data_dir
from .api import ApiEmbeddingProvider
from .base import EmbeddingProvider, EmbeddingsError, is_zero_vector, zero_vector
from .client import ProviderMode, SharedEmbeddingClient
from .local import LOCAL_MODELS, LocalEmbeddingProvider, resolve_local_model
from .service import EmbeddingService
from .shared import check_server_health, is_server_running


def local_model_dimensions(model: str) -> int:
    return resolve_local_model(model)[1].dimensions


def create_embedding_provider(config: EmbeddingConfig, data_dir: Optional[str] = None) -> EmbeddingProvider:
    if config.provider in ("openai", "voyage"):
        return ApiEmbeddingProvider(
            config.provider,
            model=config.model,
            base_url=config.base_url,
            dimensions=config.dimensions,
            api_key=config.api_key,
        )
    return SharedEmbeddingClient(
        data_dir=config.data_dir or data_dir or resolve_data_dir(),
        model=config.model,
        dimensions=config.dimensions or local_model_dimensions(config.model),
        grace_period_ms=config.server_grace_period,
    )


__all__ = [
    "ApiEmbeddingProvider",
    "EmbeddingProvider",
    "EmbeddingService",
    "EmbeddingsError",
    "LOCAL_MODELS",
    "LocalEmbeddingProvider",
    "ProviderMode",
    "SharedEmbeddingClient",
    "check_server_health",
    "create_embedding_provider",
    "is_server_running",
    "is_zero_vector",
    "local_model_dimensions",
    "zero_vector",
]
