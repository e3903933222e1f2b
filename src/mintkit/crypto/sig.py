# src/mintkit/crypto/sig.py
from __future__ import annotations

import base64
import hashlib
import json
import secrets
from typing import Any, Callable, Dict, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey
from cryptography.hazmat.primitives.serialization import Encoding, PublicFormat

Json = Dict[str, Any]


class SignatureDeclined(RuntimeError):
    """The key holder refused to sign (the wallet-prompt "reject" button)."""


def _decode_bytes(s: str) -> bytes:
    s = s.strip()
    if not s:
        raise ValueError("empty string")
    # hex
    try:
        return bytes.fromhex(s)
    except ValueError:
        pass
    # base64 / base64url
    try:
        padding = "=" * (-len(s) % 4)
        s2 = (s + padding).replace("-", "+").replace("_", "/")
        return base64.b64decode(s2)
    except Exception as e:
        raise ValueError("not hex or base64") from e


def address_from_pubkey(pubkey: str) -> str:
    """0x + last 20 bytes of sha256(pubkey)."""
    return "0x" + hashlib.sha256(_decode_bytes(pubkey)).digest()[-20:].hex()


def canonical_tx_message(
    *,
    chain_id: int,
    sender: str,
    nonce: int,
    method: str,
    args: Any,
    value: int,
    gas_limit: int,
) -> bytes:
    obj: Json = {
        "chain_id": int(chain_id),
        "sender": str(sender).lower(),
        "nonce": int(nonce),
        "method": str(method),
        "args": list(args or []),
        "value": int(value),
        "gas_limit": int(gas_limit),
    }
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def verify_ed25519_signature(*, message: bytes, sig: str, pubkey: str) -> bool:
    try:
        sig_b = _decode_bytes(sig)
        pk_b = _decode_bytes(pubkey)
        key = Ed25519PublicKey.from_public_bytes(pk_b)
        key.verify(sig_b, message)
        return True
    except (InvalidSignature, ValueError):
        return False


def sign_ed25519(*, message: bytes, privkey: str) -> str:
    """Sign with a 32-byte seed (hex or base64). Returns a hex signature."""
    pk_b = _decode_bytes(privkey)
    if len(pk_b) == 64:
        pk_b = pk_b[:32]
    if len(pk_b) != 32:
        raise ValueError("ed25519 privkey must be 32-byte seed (or 64-byte expanded key)")
    return Ed25519PrivateKey.from_private_bytes(pk_b).sign(message).hex()


class Wallet:
    """Ed25519 key holder for the local ledger.

    `approve` is consulted before every signature; returning False raises
    SignatureDeclined, which clients surface as a user-declined submission.
    """

    def __init__(self, privkey: Optional[str] = None, *, approve: Optional[Callable[[Json], bool]] = None) -> None:
        self._privkey = privkey or secrets.token_hex(32)
        seed = _decode_bytes(self._privkey)[:32]
        pub = Ed25519PrivateKey.from_private_bytes(seed).public_key()
        self.pubkey = pub.public_bytes(Encoding.Raw, PublicFormat.Raw).hex()
        self.address = address_from_pubkey(self.pubkey)
        self.approve = approve

    def sign_tx(self, *, chain_id: int, nonce: int, method: str, args: Any, value: int, gas_limit: int) -> Json:
        tx: Json = {
            "chain_id": int(chain_id),
            "sender": self.address,
            "pubkey": self.pubkey,
            "nonce": int(nonce),
            "method": str(method),
            "args": list(args or []),
            "value": int(value),
            "gas_limit": int(gas_limit),
        }
        if self.approve is not None and not self.approve(dict(tx)):
            raise SignatureDeclined("user rejected the signature request")
        msg = canonical_tx_message(
            chain_id=chain_id,
            sender=self.address,
            nonce=nonce,
            method=method,
            args=args,
            value=value,
            gas_limit=gas_limit,
        )
        tx["sig"] = sign_ed25519(message=msg, privkey=self._privkey)
        return tx
