"""
Exceptions raised by the anomaly detection driver.
"""


class DetectorError(Exception):
    """Base class for all detector errors"""


class NotFoundError(DetectorError):
    """Unknown function id, or no scheduled job for it"""


class ConflictError(DetectorError):
    """A function already has an active schedule"""


class ValidationError(DetectorError):
    """Malformed cron expression, timestamp or function spec"""


class QueryError(DetectorError):
    """The metric client could not answer one detection request"""


class AnalysisError(DetectorError):
    """A detection function failed on one dimension slice"""


class PersistenceError(DetectorError):
    """A read or write transaction against the result store failed"""


class ExecutionError(DetectorError):
    """A detection run failed as a whole and nothing was committed"""
