"""Exceptions raised by the loomtree core and services."""


class GraphValidationError(ValueError):
    """Raised when an imported document violates the tree contract.

    The store is left untouched when this is raised.
    """


class GenerationPreconditionError(Exception):
    """Raised before any network call when a generation cannot start."""


class CompletionServiceError(Exception):
    """Raised when the completion endpoint fails at the connection level."""

    def __init__(self, message: str, status: int = 0, code: str | None = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.code = code
