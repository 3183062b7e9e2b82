class ValidationError(ValueError):
    """Raised when caller input is malformed or semantically invalid."""


class NotFoundError(LookupError):
    """Raised when a user-scoped record cannot be resolved."""


class UpstreamUnavailable(RuntimeError):
    """Raised when an external dependency cannot serve a request."""


class TransactionFailure(RuntimeError):
    """Raised when an atomic database unit fails and was rolled back."""
