# src/mintkit/ledger/metadata.py
from __future__ import annotations

import base64
import json
from typing import Any, Dict

Json = Dict[str, Any]

DATA_URI_PREFIX = "data:application/json;base64,"


def embedded_document(record: Json) -> Json:
    """Self-describing metadata for a content mint, built only from on-ledger fields."""
    return {
        "name": str(record.get("name") or ""),
        "description": str(record.get("description") or ""),
        "image": str(record.get("image_uri") or ""),
        "attributes": [
            {"trait_type": "Minter", "value": str(record.get("minter_address") or "")},
            {"trait_type": "Mint Timestamp", "value": int(record.get("mint_timestamp") or 0)},
            {"trait_type": "Content Hash", "value": str(record.get("content_hash") or "")},
        ],
    }


def embedded_token_uri(record: Json) -> str:
    raw = json.dumps(embedded_document(record), sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return DATA_URI_PREFIX + base64.b64encode(raw.encode("utf-8")).decode("ascii")


def decode_token_uri(uri: str) -> Json:
    """Decode an embedded data URI. Returns {} for any other URI form."""
    if not isinstance(uri, str) or not uri.startswith(DATA_URI_PREFIX):
        return {}
    try:
        obj = json.loads(base64.b64decode(uri[len(DATA_URI_PREFIX):]).decode("utf-8"))
    except (ValueError, UnicodeDecodeError):
        return {}
    return obj if isinstance(obj, dict) else {}
