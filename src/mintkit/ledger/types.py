"""mintkit.ledger.types

Typed views over registry reads, shared by every ledger client.

Reads come back as plain JSON from the local ledger and as tuples/ints from
an EVM node; both are coerced here so the orchestrator sees one shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

Json = Dict[str, Any]


def _coerce_int(v: Any, *, field: str) -> int:
    try:
        if isinstance(v, bool):
            raise ValueError("bool is not a valid int")
        return int(v)
    except Exception as e:
        raise ValueError(f"registry read error: field '{field}' must be int-coercible (got {type(v).__name__})") from e


@dataclass(frozen=True)
class RegistryConfig:
    fee: int
    max_supply: int
    minting_enabled: bool
    next_token_id: int

    @property
    def total_supply(self) -> int:
        return self.next_token_id - 1

    @property
    def exhausted(self) -> bool:
        return self.next_token_id > self.max_supply

    @classmethod
    def from_json(cls, obj: Json) -> "RegistryConfig":
        return cls(
            fee=_coerce_int(obj.get("fee"), field="fee"),
            max_supply=_coerce_int(obj.get("max_supply"), field="max_supply"),
            minting_enabled=bool(obj.get("minting_enabled")),
            next_token_id=_coerce_int(obj.get("next_token_id"), field="next_token_id"),
        )

    def to_json(self) -> Json:
        return {
            "fee": self.fee,
            "max_supply": self.max_supply,
            "minting_enabled": self.minting_enabled,
            "next_token_id": self.next_token_id,
            "total_supply": self.total_supply,
        }


@dataclass(frozen=True)
class TokenRecord:
    token_id: int
    name: str
    description: str
    image_uri: str
    mint_timestamp: int
    minter_address: str
    content_hash: str = ""

    @classmethod
    def from_json(cls, token_id: int, obj: Json) -> "TokenRecord":
        return cls(
            token_id=int(token_id),
            name=str(obj.get("name") or ""),
            description=str(obj.get("description") or ""),
            image_uri=str(obj.get("image_uri") or ""),
            mint_timestamp=_coerce_int(obj.get("mint_timestamp") or 0, field="mint_timestamp"),
            minter_address=str(obj.get("minter_address") or "").lower(),
            content_hash=str(obj.get("content_hash") or ""),
        )

    def to_json(self) -> Json:
        return {
            "token_id": self.token_id,
            "name": self.name,
            "description": self.description,
            "image_uri": self.image_uri,
            "mint_timestamp": self.mint_timestamp,
            "minter_address": self.minter_address,
            "content_hash": self.content_hash,
        }


@dataclass(frozen=True)
class MintCall:
    """The exact content-mint invocation that is estimated and then broadcast."""

    name: str
    description: str
    content_hash: str
    metadata_uri: str = ""

    def args(self) -> List[Any]:
        return [self.name, self.description, self.content_hash, self.metadata_uri]


@dataclass(frozen=True)
class LogEntry:
    event: str
    args: Json = field(default_factory=dict)

    def to_json(self) -> Json:
        return {"event": self.event, "args": dict(self.args)}


@dataclass(frozen=True)
class TxReceipt:
    transaction_hash: str
    status: int
    block_number: int
    gas_used: int
    logs: List[LogEntry] = field(default_factory=list)
    revert_reason: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return int(self.status) == 1

    def to_json(self) -> Json:
        return {
            "transaction_hash": self.transaction_hash,
            "status": self.status,
            "block_number": self.block_number,
            "gas_used": self.gas_used,
            "logs": [l.to_json() for l in self.logs],
            "revert_reason": self.revert_reason,
        }
