"""
Domain errors raised by the match lifecycle services.

All errors subclass ValueError so callers that already treat bad input as
ValueError keep working. They propagate to the caller unmodified; only
notification and live-update failures are swallowed (and logged).
"""


class MatchLifecycleError(ValueError):
    """Base class for match lifecycle errors."""


class ValidationError(MatchLifecycleError):
    """Bad input: unknown track id, malformed date, out-of-range position."""


class ConflictError(MatchLifecycleError):
    """Duplicate join or vote, position tie conflict, already verified."""


class NotFoundError(MatchLifecycleError):
    """Unknown match, game or participant."""


class PreconditionError(MatchLifecycleError):
    """Current status does not allow the requested transition."""


class IntegrityError(MatchLifecycleError):
    """
    The operation cannot produce a consistent result, e.g. no valid team
    configuration or rating calculation on a game that cannot be finalized.
    """
