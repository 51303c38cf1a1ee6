class UnionError(Exception):
    """Base class for errors raised by upstream selection."""


class ObjectNotFoundError(UnionError, FileNotFoundError):
    """No upstream or entry holds the requested path."""

    def __init__(self, message: str = "object not found"):
        super().__init__(message)


class NoUpstreamsFoundError(UnionError):
    """Every candidate upstream is at or below its reserved free space."""

    def __init__(self, message: str = "no upstreams found with more than min_free_space space spare"):
        super().__init__(message)


class PermissionDeniedError(UnionError, PermissionError):
    """Every candidate upstream is read only (or no-create, for create)."""

    def __init__(self, message: str = "permission denied"):
        super().__init__(message)


class CancelledError(UnionError):
    """The caller's context was cancelled or its deadline passed."""


class MetricUnavailableError(UnionError):
    """An upstream cannot report free space or its number of objects."""


class PolicyNotFoundError(UnionError, KeyError):
    """No policy is registered under the requested name."""

    def __str__(self):
        # KeyError quotes its argument; keep the plain message
        return str(self.args[0]) if self.args else ""
