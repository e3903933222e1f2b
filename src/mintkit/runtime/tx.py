from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List

from mintkit.util.canon import canon_bytes, sha256_hex

Json = Dict[str, Any]


@dataclass(frozen=True)
class TxEnvelope:
    chain_id: int
    sender: str
    pubkey: str
    nonce: int
    method: str
    args: List[Any] = field(default_factory=list)
    value: int = 0
    gas_limit: int = 0
    sig: str = ""

    @staticmethod
    def from_json(j: Any) -> "TxEnvelope":
        if isinstance(j, TxEnvelope):
            return j
        if not isinstance(j, dict):
            j = dict(j)  # type: ignore[arg-type]
        return TxEnvelope(
            chain_id=int(j.get("chain_id", 0)),
            sender=str(j.get("sender", "")).lower(),
            pubkey=str(j.get("pubkey", "")),
            nonce=int(j.get("nonce", 0)),
            method=str(j.get("method", "")),
            args=list(j.get("args") or []),
            value=int(j.get("value", 0)),
            gas_limit=int(j.get("gas_limit", 0)),
            sig=str(j.get("sig", "") or ""),
        )

    def to_json(self) -> Json:
        return {
            "chain_id": self.chain_id,
            "sender": self.sender,
            "pubkey": self.pubkey,
            "nonce": self.nonce,
            "method": self.method,
            "args": list(self.args),
            "value": self.value,
            "gas_limit": self.gas_limit,
            "sig": self.sig,
        }

    def calldata(self) -> bytes:
        return canon_bytes({"method": self.method, "args": list(self.args)})


def compute_tx_hash(env: TxEnvelope) -> str:
    """0x-prefixed sha256 over the canonical envelope.

    Excludes the signature, so re-encoding a signature never changes the hash.
    """
    obj = env.to_json()
    obj.pop("sig", None)
    return "0x" + sha256_hex(canon_bytes(obj))
