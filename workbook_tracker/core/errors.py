from typing import Optional


class TrackerError(Exception):
    """Base class for every error the tracker reports to a caller."""

    status_code = 400
    code = "TRACKER_ERROR"

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(TrackerError):
    """Rejected input. Raised before any write, so nothing has changed."""

    status_code = 400
    code = "VALIDATION_FAILED"


class NotFoundError(TrackerError):
    status_code = 404
    code = "NOT_FOUND"


class PermissionDenied(TrackerError):
    status_code = 403
    code = "ACCESS_DENIED"


class PersistenceError(TrackerError):
    """The record store rejected or could not complete a read or write."""

    status_code = 502
    code = "PERSISTENCE_ERROR"


class FatalPrecondition(TrackerError):
    """A multi-step operation cannot start. Raised before any write."""

    status_code = 409
    code = "FATAL_PRECONDITION"


class PartialDistributionError(TrackerError):
    """
    One or more targets failed while cloning chapters.

    Targets that succeeded are kept. The full per-target report is attached.
    """

    status_code = 409
    code = "PARTIAL_DISTRIBUTION"

    def __init__(self, report, detail: Optional[str] = None):
        failed = ", ".join(sorted(report.failed))
        super().__init__(detail or f"Distribution failed for: {failed}")
        self.report = report
