"""Exception hierarchy shared across the engine."""


class KnowledgeEngineError(Exception):
    """Base class for engine errors."""


class ValidationError(KnowledgeEngineError, ValueError):
    """Rejected input. Never retried."""


class VectorDimensionError(ValidationError):
    """Embedding length does not match the configured dimension."""

    def __init__(self, actual: int, expected: int):
        self.actual = actual
        self.expected = expected
        super().__init__(
            f"Embedding dimension mismatch: got {actual}, expected {expected}. "
            f"Check EMBEDDING_DIMENSIONS against the embedding model output."
        )


class UnsupportedKnowledgeTypeError(ValidationError):
    """Knowledge type has no handler or no vector collection."""

    def __init__(self, knowledge_type: object):
        self.knowledge_type = knowledge_type
        super().__init__(f"Unsupported knowledge type: {knowledge_type}")


class EntryNotFoundError(KnowledgeEngineError):
    """Knowledge entry does not exist or is not visible to the caller."""

    def __init__(self, entry_id: str):
        self.entry_id = entry_id
        super().__init__(f"Knowledge entry not found: {entry_id}")


class ServiceNotInitializedError(KnowledgeEngineError):
    """A service was used before init() completed."""


class StoreConnectionError(KnowledgeEngineError):
    """A backing store stayed unreachable after bounded retries."""
