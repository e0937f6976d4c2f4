"""
Error taxonomy of the matching engine.

Every error raised by the core derives from MatchingError so the API layer
can translate them to HTTP responses in one place.
"""


class MatchingError(Exception):
    """Base class for all matching engine errors."""

    status_code = 500

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__


class InvalidQuery(MatchingError):
    """Query vector or quality score is malformed. Caller error, do not retry."""

    status_code = 422


class InvalidVectorKind(MatchingError):
    """The store refused a vector it cannot normalize or that has the wrong shape."""

    status_code = 422


class StoreUnavailable(MatchingError):
    """Transient storage failure. The whole submission may be retried."""

    status_code = 503


class SearchTimeout(StoreUnavailable):
    """Snapshot or similarity search exceeded its time budget."""


class NotifierFailure(MatchingError):
    """Alert delivery failed. Logged only, never propagated."""


class CaseNotFound(MatchingError):
    status_code = 404


class RecordNotFound(MatchingError):
    status_code = 404


class InvalidTransition(MatchingError):
    """A case or match record was asked to move to a state it cannot reach."""

    status_code = 409


class DuplicateReportNumber(MatchingError):
    status_code = 409
