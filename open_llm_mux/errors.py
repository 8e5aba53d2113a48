from __future__ import annotations

from typing import Any


class MuxError(Exception):
    pass


class EmptyCandidateSetError(MuxError, ValueError):
    def __init__(self, message: str = "open-llm-mux requires at least one model."):
        super().__init__(message)


class AllCandidatesFailedError(MuxError):
    def __init__(self, errors: list[BaseException]):
        self.errors = tuple(errors)
        super().__init__(
            f"open-llm-mux: all models failed ({len(self.errors)} attempts)"
        )


class InvalidProviderError(MuxError, TypeError):
    def __init__(self, *, index: int, operation: str, message: str):
        self.index = index
        self.operation = operation
        super().__init__(message)


class BackendError(Exception):
    """Error raised by collaborator backends for non-success HTTP responses.

    ``status_code`` is what the failure classifier inspects; ``body`` keeps
    the decoded upstream payload for diagnostics.
    """

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        body: Any = None,
    ):
        self.status_code = status_code
        self.body = body
        super().__init__(message)


__all__ = [
    "AllCandidatesFailedError",
    "BackendError",
    "EmptyCandidateSetError",
    "InvalidProviderError",
    "MuxError",
]
