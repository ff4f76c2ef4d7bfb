from __future__ import annotations


class ReconcileError(Exception):
    """Base class for a failed reconciliation attempt.

    ``reason`` is used verbatim as the Kubernetes Event reason, so it must stay
    a short CamelCase token.
    """

    reason = "ReconcileFailure"


class ParseError(ReconcileError):
    """The directive annotation does not have the ``key=target`` shape."""

    reason = "ParseFailure"


class ValidationError(ReconcileError):
    """The directive target cannot be turned into a usable URL."""

    reason = "ValidationFailure"


class FetchError(ReconcileError):
    """Retrieving the directive target failed."""

    reason = "GetFailure"


class WriteConflictError(ReconcileError):
    """The API server rejected the ConfigMap update."""

    reason = "UpdateFailure"

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.status = status


class ResourceLookupError(ReconcileError):
    """The local cache could not answer a lookup by key."""

    reason = "LookupFailure"
