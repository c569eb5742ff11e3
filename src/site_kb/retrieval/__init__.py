from .service import (
    CONTEXT_SEPARATOR,
    RetrievalResult,
    RetrievalService,
    RetrievalStatus,
    Source,
    assemble_context,
)

__all__ = [
    "CONTEXT_SEPARATOR",
    "RetrievalResult",
    "RetrievalService",
    "RetrievalStatus",
    "Source",
    "assemble_context",
]
