"""Observability helpers."""

from rundown.observability.otel import (
    initialize,
    shutdown,
    start_span,
    record_embedding_request,
    record_cache_lookup,
    record_distill,
)

__all__ = [
    "initialize",
    "shutdown",
    "start_span",
    "record_embedding_request",
    "record_cache_lookup",
    "record_distill",
]
