"""
memquery error taxonomy.

Every search stage raises one of these, chained (``raise ... from exc``) to the
underlying cause. Callers map them to transport-level responses.
"""


class MemorySearchError(Exception):
    """Base class for all memory search failures."""


class InvalidQueryError(MemorySearchError, ValueError):
    """The query has neither text nor a metadata filter, or bad parameters."""


class MalformedFilterError(MemorySearchError, ValueError):
    """The metadata filter payload does not parse into a filter tree."""


class EmbeddingProviderError(MemorySearchError):
    """The embedding provider failed or returned an unusable result."""


class StorageExecutionError(MemorySearchError):
    """The storage engine failed to execute the search query."""


class RerankError(MemorySearchError):
    """MMR reranking received unusable candidates."""


class SearchCancelledError(MemorySearchError):
    """The caller cancelled the search while it was waiting on I/O."""
