"""
Error taxonomy shared by the categorization, pattern and challenge services.
"""

from enum import Enum
from typing import Optional


class ErrorCode(str, Enum):
    STORAGE_FAILED = "STORAGE_FAILED"
    UNAUTHORIZED = "UNAUTHORIZED"
    NOT_FOUND = "NOT_FOUND"
    INVALID_OPERATION = "INVALID_OPERATION"
    PATTERN_DETECTION_FAILED = "PATTERN_DETECTION_FAILED"


class SpendLensError(Exception):
    """Base error carrying a machine-readable code and the wrapped cause"""

    code = ErrorCode.STORAGE_FAILED

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        original_error: Optional[BaseException] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.original_error = original_error


class StorageFailure(SpendLensError):
    """A read or write against the row store failed"""

    code = ErrorCode.STORAGE_FAILED


class Unauthorized(SpendLensError):
    """No authenticated user is available for the operation"""

    code = ErrorCode.UNAUTHORIZED


class NotFound(SpendLensError):
    code = ErrorCode.NOT_FOUND


class InvalidOperation(SpendLensError):
    """User-facing rejection, never retried"""

    code = ErrorCode.INVALID_OPERATION


class PatternDetectionFailure(SpendLensError):
    """Pattern detection could not run over the supplied transactions.

    Distinct from a successful pass that found nothing.
    """

    code = ErrorCode.PATTERN_DETECTION_FAILED

    def __init__(self, message: str, *, transaction_id: Optional[str] = None, **kwargs) -> None:
        super().__init__(message, **kwargs)
        self.transaction_id = transaction_id
