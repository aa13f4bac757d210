class InvalidRequestError(ValueError):
    """Missing or malformed input; nothing was written."""


class NotFoundError(ValueError):
    pass


class ConflictError(RuntimeError):
    """A ledger row kept changing underneath the write; the request may be retried."""


class UpstreamError(RuntimeError):
    """The financial-data provider failed; the whole sync may be retried."""
