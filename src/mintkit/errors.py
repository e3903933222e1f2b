from __future__ import annotations

"""Error taxonomy for the publication service and the mint orchestrator.

Every failure is one of the classes below and is matched by class and by its
`code` / `kind` / `revert` discriminants, never by message text:

  ValidationError       local precondition, nothing left the process
  InvalidIdentifierFormat
  UploadError           publication failed (kind: auth / network / invalid response)
  IntegrityError        published identifiers are inconsistent with each other
  PreflightError        registry config or balance rules out the mint; no fee risked
  EstimationError       dry-run reverted
  SubmissionError       broadcast rejected (kind: user_declined / transport)
  ExecutionError        included in the ledger but execution failed
  ResolutionError       token identifier could not be verified after success
"""

from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Dict, Optional

from mintkit.ledger.errors import RegistryErrorCode

Json = Dict[str, Any]


class UploadFailure(str, Enum):
    AUTH_FAILURE = "auth_failure"
    NETWORK_FAILURE = "network_failure"
    INVALID_RESPONSE = "invalid_response"


class SubmissionFailure(str, Enum):
    USER_DECLINED = "user_declined"
    TRANSPORT = "transport"


@dataclass(eq=False)
class MintError(Exception):
    reason: str
    details: Optional[Json] = None

    code: ClassVar[str] = "mint_error"

    def __str__(self) -> str:
        if not self.details:
            return f"{self.code}:{self.reason}"
        return f"{self.code}:{self.reason}:{self.details}"

    def to_json(self) -> Json:
        return {"code": self.code, "message": self.reason, "details": dict(self.details or {})}


@dataclass(eq=False)
class ValidationError(MintError):
    code: ClassVar[str] = "validation_failed"


@dataclass(eq=False)
class MintInProgress(ValidationError):
    code: ClassVar[str] = "mint_in_progress"


@dataclass(eq=False)
class InvalidIdentifierFormat(MintError):
    code: ClassVar[str] = "invalid_identifier_format"


@dataclass(eq=False)
class UploadError(MintError):
    kind: UploadFailure = UploadFailure.NETWORK_FAILURE

    code: ClassVar[str] = "upload_failed"

    def to_json(self) -> Json:
        out = super().to_json()
        out["details"]["kind"] = self.kind.value
        return out


@dataclass(eq=False)
class IntegrityError(MintError):
    code: ClassVar[str] = "integrity_violation"


@dataclass(eq=False)
class LedgerCallError(MintError):
    """Base for failures on the ledger side of the pipeline.

    `revert` is set when the failure was classified into a named registry
    error; otherwise `reason` carries the raw revert text.
    """

    revert: Optional[RegistryErrorCode] = None

    code: ClassVar[str] = "ledger_call_failed"

    @property
    def classified(self) -> bool:
        return self.revert is not None

    def to_json(self) -> Json:
        out = super().to_json()
        if self.revert is not None:
            out["details"]["revert"] = self.revert.value
        return out


@dataclass(eq=False)
class PreflightError(LedgerCallError):
    code: ClassVar[str] = "preflight_failed"


@dataclass(eq=False)
class EstimationError(LedgerCallError):
    code: ClassVar[str] = "estimation_reverted"


@dataclass(eq=False)
class SubmissionError(LedgerCallError):
    kind: SubmissionFailure = SubmissionFailure.TRANSPORT

    code: ClassVar[str] = "submission_failed"

    def to_json(self) -> Json:
        out = super().to_json()
        out["details"]["kind"] = self.kind.value
        return out


@dataclass(eq=False)
class ExecutionError(LedgerCallError):
    code: ClassVar[str] = "execution_failed"


@dataclass(eq=False)
class ResolutionError(LedgerCallError):
    code: ClassVar[str] = "resolution_failed"
