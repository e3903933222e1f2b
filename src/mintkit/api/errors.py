from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional, Type

from mintkit.errors import (
    EstimationError,
    ExecutionError,
    IntegrityError,
    InvalidIdentifierFormat,
    MintError,
    MintInProgress,
    PreflightError,
    ResolutionError,
    SubmissionError,
    UploadError,
    ValidationError,
)


@dataclass(frozen=True, slots=True)
class ApiError(Exception):
    status_code: int
    code: str
    message: str
    details: Dict[str, Any]

    @staticmethod
    def bad_request(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(400, code, message, details or {})

    @staticmethod
    def not_found(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(404, code, message, details or {})

    @staticmethod
    def internal(code: str, message: str, details: Optional[Dict[str, Any]] = None) -> "ApiError":
        return ApiError(500, code, message, details or {})

    def to_json(self) -> Dict[str, Any]:
        return {"ok": False, "error": {"code": self.code, "message": self.message, "details": dict(self.details)}}


# Most specific class first.
_STATUS_BY_CLASS: "list[tuple[Type[MintError], int]]" = [
    (MintInProgress, 409),
    (ValidationError, 400),
    (InvalidIdentifierFormat, 400),
    (PreflightError, 409),
    (EstimationError, 409),
    (UploadError, 502),
    (IntegrityError, 502),
    (SubmissionError, 502),
    (ExecutionError, 502),
    (ResolutionError, 502),
]


def api_error_from_mint_error(e: MintError) -> ApiError:
    status = 500
    for cls, code in _STATUS_BY_CLASS:
        if isinstance(e, cls):
            status = code
            break
    body = e.to_json()
    return ApiError(status, body["code"], body["message"], body["details"])
