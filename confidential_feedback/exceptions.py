"""Project-wide custom exception types."""


class FeedbackSystemError(RuntimeError):
    """Base class for every failure raised by the feedback system."""


class InvalidInputError(FeedbackSystemError, ValueError):
    """Raised when a submission field is outside its allowed range."""


class NotAuthorizedError(FeedbackSystemError):
    """Raised when the caller lacks the capability an operation requires."""


class NothingToAnalyzeError(FeedbackSystemError):
    """Raised when an aggregation run finds no unanalyzed records."""


class NotReadyError(FeedbackSystemError):
    """Raised when a reveal is requested before any aggregation pass completed."""


class MissingProofError(FeedbackSystemError):
    """Raised when an oracle callback arrives without authenticity evidence."""


class InvalidProofError(FeedbackSystemError):
    """Raised when an oracle callback's proof does not verify."""


class UnknownRequestError(FeedbackSystemError):
    """Raised when a callback names a request that is not pending."""


class CapacityExceededError(FeedbackSystemError):
    """Raised when the 32-bit record id space is exhausted."""


class CiphertextError(FeedbackSystemError):
    """Raised by the capability layer for unknown handles or width mismatches."""
