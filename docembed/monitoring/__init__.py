from .metrics import EmbeddingMetrics

__all__ = ["EmbeddingMetrics"]
