from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional


class RegistryErrorCode(str, Enum):
    """Named registry failures. Values are the on-ledger error names."""

    MINTING_DISABLED = "MintingDisabled"
    SUPPLY_EXCEEDED = "SupplyExceeded"
    INSUFFICIENT_PAYMENT = "InsufficientPayment"
    INVALID_URI = "InvalidURI"
    INVALID_CONTENT_HASH = "InvalidContentHash"
    EMPTY_NAME = "EmptyName"
    EMPTY_DESCRIPTION = "EmptyDescription"
    UNAUTHORIZED = "Unauthorized"
    NO_BALANCE = "NoBalance"
    NONEXISTENT_TOKEN = "NonexistentToken"
    REENTRANCY = "Reentrancy"
    UNKNOWN_METHOD = "UnknownMethod"
    INVALID_ARGUMENT = "InvalidArgument"


# Names used by deployed EVM builds of the registry. Matched exactly.
_ALIASES: Dict[str, RegistryErrorCode] = {
    "MaxSupplyExceeded": RegistryErrorCode.SUPPLY_EXCEEDED,
    "InvalidIPFSHash": RegistryErrorCode.INVALID_CONTENT_HASH,
    "InvalidTokenURI": RegistryErrorCode.INVALID_URI,
    "OwnableUnauthorizedAccount": RegistryErrorCode.UNAUTHORIZED,
    "ReentrancyGuardReentrantCall": RegistryErrorCode.REENTRANCY,
    "ERC721NonexistentToken": RegistryErrorCode.NONEXISTENT_TOKEN,
}

_BY_NAME: Dict[str, RegistryErrorCode] = {c.value: c for c in RegistryErrorCode}
_BY_NAME.update(_ALIASES)


def registry_error_code(name: Any) -> Optional[RegistryErrorCode]:
    """Map an error name (e.g. "MintingDisabled" or "MintingDisabled()") to its code.

    Returns None for anything that is not exactly a known name.
    """
    if isinstance(name, RegistryErrorCode):
        return name
    if not isinstance(name, str):
        return None
    n = name.strip()
    if n.endswith("()"):
        n = n[:-2]
    return _BY_NAME.get(n)


@dataclass(eq=False)
class RegistryError(Exception):
    """Revert raised by the issuance registry. The whole call is discarded."""

    code: RegistryErrorCode
    reason: str = ""
    details: Optional[Dict[str, Any]] = None

    def __str__(self) -> str:
        if self.reason:
            return f"{self.code.value}:{self.reason}"
        return self.code.value
