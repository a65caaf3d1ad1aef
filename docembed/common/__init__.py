"""
Common Module - Shared utilities across all layers
===================================================

Cross-layer shared code:
- pipeline_config: Pipeline configuration (OpenAI, Redis, PostgreSQL, Kafka, etc.)
- errors: Pipeline exception hierarchy
"""

from .errors import (
    ConfigurationError,
    JobStalledError,
    LeaseUnavailableError,
    NotFoundError,
    PipelineError,
    ProviderError,
    StorageError,
    ValidationError,
)
from .pipeline_config import get_config, reset_config, PipelineConfig

__all__ = [
    "get_config",
    "reset_config",
    "PipelineConfig",
    "PipelineError",
    "ValidationError",
    "NotFoundError",
    "ProviderError",
    "ConfigurationError",
    "StorageError",
    "LeaseUnavailableError",
    "JobStalledError",
]
