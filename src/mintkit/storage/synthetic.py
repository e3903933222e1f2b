# src/mintkit/storage/synthetic.py
from __future__ import annotations

import hashlib

from mintkit.util.canon import b58encode

# Legacy CID body length after the "Qm" prefix.
_LEGACY_BODY_LEN = 44


def synthetic_cid(seed: str, timestamp_ms: int) -> str:
    """Deterministic legacy-shaped identifier for offline/degraded publication.

    Same (seed, timestamp_ms) always yields the same identifier. The result
    passes legacy CID validation but does not name any real content.
    """
    digest = hashlib.sha512(f"{seed}:{int(timestamp_ms)}".encode("utf-8")).digest()
    body = b58encode(digest)
    return "Qm" + body[:_LEGACY_BODY_LEN].ljust(_LEGACY_BODY_LEN, "1")
