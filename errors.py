"""Error kinds raised by the service layer.

Lookup, input and natural-key failures subclass ``ValueError`` so callers that
already treat service ``ValueError`` as a client error keep working.
"""


class NotFoundError(ValueError):
    """A transaction or budget id does not exist for the requesting owner."""


class ValidationError(ValueError):
    """Malformed input, rejected before any store mutation."""


class ConflictError(ValueError):
    """A second budget was about to be written for an existing natural key."""


class StoreUnavailableError(RuntimeError):
    """The backing database could not be reached or failed mid-operation."""
