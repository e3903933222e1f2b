# src/mintkit/util/canon.py
from __future__ import annotations

import hashlib
import json
from typing import Any, Dict

Json = Dict[str, Any]

_B58_ALPHABET = "123456789ABCDEFGHJKLMNPQRSTUVWXYZabcdefghijkmnopqrstuvwxyz"


def canon_json(obj: Any) -> str:
    """Canonical JSON encoding.

    Unknown types are NOT coerced (no default=str): hashes and persisted
    snapshots must fail fast rather than silently vary.
    """
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canon_bytes(obj: Any) -> bytes:
    return canon_json(obj).encode("utf-8")


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def b58encode(data: bytes) -> str:
    n = int.from_bytes(data, "big")
    out = []
    while n > 0:
        n, rem = divmod(n, 58)
        out.append(_B58_ALPHABET[rem])
    # Leading zero bytes are encoded as '1'.
    for b in data:
        if b != 0:
            break
        out.append("1")
    return "".join(reversed(out))
