# src/mintkit/util/cid.py
from __future__ import annotations

"""Content identifier (IPFS CID) shape validation.

Exactly two shapes are accepted:
  - legacy (CIDv0): "Qm" + 44 base58btc characters, 46 total (no 0, O, I, l).
  - modern (CIDv1): "ba" + at least 56 lowercase alphanumerics, 58+ total.

This is NOT a full multiformats parser. The goal is to reject malformed input
before any network call is made with it.
"""

import re
from dataclasses import dataclass

from mintkit.errors import InvalidIdentifierFormat

_CIDV0_RE = re.compile(r"^Qm[1-9A-HJ-NP-Za-km-z]{44}$")
_CIDV1_RE = re.compile(r"^ba[a-z0-9]{56,}$")

IPFS_SCHEME = "ipfs://"


@dataclass(frozen=True)
class CidValidation:
    ok: bool
    reason: str
    cid: str
    version: int = -1


def validate_cid(cid: object) -> CidValidation:
    if not isinstance(cid, str):
        return CidValidation(False, "not_a_string", "")
    if not cid:
        return CidValidation(False, "missing_cid", "")
    if _CIDV0_RE.match(cid):
        return CidValidation(True, "ok", cid, 0)
    if _CIDV1_RE.match(cid):
        return CidValidation(True, "ok", cid, 1)
    return CidValidation(False, "invalid_cid_format", cid)


def is_valid_cid(cid: object) -> bool:
    return validate_cid(cid).ok


def require_cid(cid: object) -> str:
    """Return `cid` unchanged if well-formed, else raise InvalidIdentifierFormat."""
    v = validate_cid(cid)
    if not v.ok:
        shown = cid if isinstance(cid, str) else repr(cid)
        raise InvalidIdentifierFormat(v.reason, {"cid": shown[:128]})
    return v.cid


def protocol_uri(cid: str) -> str:
    return f"{IPFS_SCHEME}{require_cid(cid)}"


def cid_from_uri(uri: str) -> str:
    """Extract the identifier from ipfs://<cid>[/path] or <gateway>/ipfs/<cid>[/path]."""
    u = (uri or "").strip()
    if u.startswith(IPFS_SCHEME):
        rest = u[len(IPFS_SCHEME):]
    elif "/ipfs/" in u:
        rest = u.split("/ipfs/", 1)[1]
    else:
        rest = u
    return require_cid(rest.split("/", 1)[0].split("?", 1)[0])
