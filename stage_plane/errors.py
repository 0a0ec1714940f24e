class StagePlaneError(Exception):
    """Base class for every failure the publish pipeline can report."""

    kind = "unknown"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ValidationError(StagePlaneError):
    """Malformed change or request, rejected before any network call."""

    kind = "validation"


class NotFoundError(StagePlaneError):
    kind = "not_found"


class StaleChange:
    """One path whose staged base revision no longer matches the remote."""

    def __init__(self, path: str, expected: str | None, actual: str | None) -> None:
        self.path = path
        self.expected = expected
        self.actual = actual

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, StaleChange):
            return NotImplemented
        return (self.path, self.expected, self.actual) == (
            other.path,
            other.expected,
            other.actual,
        )

    def __repr__(self) -> str:
        return (
            f"StaleChange(path={self.path!r}, expected={self.expected!r}, "
            f"actual={self.actual!r})"
        )


class ConflictError(StagePlaneError):
    """
    Optimistic concurrency check failed.

    Raised either while reconciling (a staged base revision is stale) or while
    updating the ref (the branch tip moved). The caller should reload the
    baseline and re-stage.
    """

    kind = "conflict"

    def __init__(self, message: str, stale: list[StaleChange] | None = None) -> None:
        super().__init__(message)
        self.stale = stale or []


class RateLimitedError(StagePlaneError):
    kind = "rate_limited"

    def __init__(self, message: str, retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class TransportError(StagePlaneError):
    """
    Any other I/O failure against the remote store.

    `ambiguous` is True when the failure happened while the ref update was in
    flight, so the commit may or may not have landed, and False when the
    raiser knows nothing was sent. None leaves the decision to the caller.
    """

    kind = "transport"

    def __init__(self, message: str, ambiguous: bool | None = None) -> None:
        super().__init__(message)
        self.ambiguous = ambiguous


class CancelledError(StagePlaneError):
    kind = "cancelled"
