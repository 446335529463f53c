"""Exception hierarchy for diverse-retrieval."""


class DiverseRetrievalError(Exception):
    """Base exception for all diverse-retrieval errors."""

    pass


class InvalidConfigurationError(DiverseRetrievalError, ValueError):
    """Raised when a limit, batch size or tunable is rejected before any work runs."""

    pass


class DimensionMismatchError(DiverseRetrievalError, ValueError):
    """Raised when vector lengths (or matrix shapes) disagree."""

    def __init__(self, expected: int, got: int, what: str = "vector"):
        self.expected = expected
        self.got = got
        super().__init__(f"{what} dimension mismatch: expected {expected}, got {got}")


class EmbeddingError(DiverseRetrievalError):
    """Raised when an embedding provider returns an unusable response."""

    pass


class RetrievalError(DiverseRetrievalError):
    """Raised when retrieval fails; the underlying provider error is chained as ``__cause__``."""

    pass


class BackendUnavailableError(DiverseRetrievalError):
    """Raised when an accelerator primitive is called on a host without one."""

    pass
