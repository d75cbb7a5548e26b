"""Structured errors raised by the document services"""
from enum import Enum


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    DUPLICATE_NAME = "DUPLICATE_NAME"
    DUPLICATE_FILENAME = "DUPLICATE_FILENAME"
    FILE_PROCESSING_ERROR = "FILE_PROCESSING_ERROR"
    TIMEOUT_ERROR = "TIMEOUT_ERROR"
    DATABASE_ERROR = "DATABASE_ERROR"
    NOT_FOUND = "NOT_FOUND"
    SEARCH_ERROR = "SEARCH_ERROR"
    INTERNAL_ERROR = "INTERNAL_ERROR"


STATUS_CODES = {
    ErrorCode.VALIDATION_ERROR: 400,
    ErrorCode.DUPLICATE_NAME: 409,
    ErrorCode.DUPLICATE_FILENAME: 409,
    ErrorCode.FILE_PROCESSING_ERROR: 422,
    ErrorCode.TIMEOUT_ERROR: 504,
    ErrorCode.DATABASE_ERROR: 500,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.SEARCH_ERROR: 502,
    ErrorCode.INTERNAL_ERROR: 500,
}


class DocumentServiceError(Exception):
    """Failure carrying an error code and a message safe to show to callers"""

    def __init__(self, code: ErrorCode, message: str):
        super().__init__(message)
        self.code = code
        self.message = message

    @property
    def status_code(self) -> int:
        return STATUS_CODES[self.code]
