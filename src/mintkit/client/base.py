from __future__ import annotations

"""Transport-neutral ledger client surface used by the mint orchestrator.

Error contract for implementations:
  - estimate_mint        raises EstimationError (revert classified when possible)
  - send_mint            raises SubmissionError (user_declined | transport)
  - reads / receipts     raise LedgerReadError; the orchestrator decides whether
                         that is a preflight, confirmation or resolution failure
"""

from dataclasses import dataclass
from typing import Any, Dict, Optional, Protocol

from mintkit.ledger.errors import RegistryErrorCode
from mintkit.ledger.types import MintCall, RegistryConfig, TokenRecord, TxReceipt

Json = Dict[str, Any]


@dataclass(eq=False)
class LedgerReadError(Exception):
    reason: str
    revert: Optional[RegistryErrorCode] = None
    details: Optional[Json] = None

    def __str__(self) -> str:
        if self.revert is not None:
            return f"{self.reason}:{self.revert.value}"
        return self.reason


class ReceiptTimeout(LedgerReadError):
    pass


class LedgerClient(Protocol):
    @property
    def address(self) -> str: ...

    def registry_config(self) -> RegistryConfig: ...

    def balance(self) -> int: ...

    def estimate_mint(self, call: MintCall, *, value: int) -> int: ...

    def send_mint(self, call: MintCall, *, gas_limit: int, value: int) -> str: ...

    def wait_for_receipt(self, tx_hash: str, *, timeout_s: float) -> TxReceipt: ...

    def next_token_id(self) -> int: ...

    def owner_of(self, token_id: int) -> str: ...

    def token_record(self, token_id: int) -> Optional[TokenRecord]: ...
