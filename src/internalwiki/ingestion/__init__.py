"""Document indexing pipeline."""

from .service import DocumentIndexer, IndexDocumentRequest, IndexingConfig, IndexingError, IndexingResult

__all__ = [
    "DocumentIndexer",
    "IndexDocumentRequest",
    "IndexingConfig",
    "IndexingError",
    "IndexingResult",
]
