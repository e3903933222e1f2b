# src/mintkit/storage/pinata.py
from __future__ import annotations

"""Pinata pinning-provider client.

Surface used:
  GET  /data/testAuthentication
  POST /pinning/pinFileToIPFS   (multipart: file, pinataMetadata, pinataOptions)
  POST /pinning/pinJSONToIPFS   (JSON: pinataContent, pinataMetadata, pinataOptions)

Every failure is normalized to UploadError with one of three kinds:
  - auth_failure      HTTP 401/403
  - network_failure   no response, timeout, or 5xx
  - invalid_response  anything else non-2xx, non-JSON body, missing/malformed IpfsHash
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from mintkit.errors import UploadError, UploadFailure
from mintkit.storage.http import HttpResponse, HttpTransportError, Transport, encode_multipart, urllib_transport
from mintkit.util.cid import validate_cid
from mintkit.util.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("mintkit.storage.pinata")


@dataclass(frozen=True)
class PinResult:
    cid: str
    size_bytes: int
    timestamp: str = ""


def _classify_status(resp: HttpResponse, op: str) -> UploadError:
    status = int(resp.status)
    details = {"op": op, "status": status, "body": resp.text()}
    if status in (401, 403):
        return UploadError(f"http_{status}", details, kind=UploadFailure.AUTH_FAILURE)
    if status >= 500 or status == 0:
        return UploadError(f"http_{status}", details, kind=UploadFailure.NETWORK_FAILURE)
    return UploadError(f"http_{status}", details, kind=UploadFailure.INVALID_RESPONSE)


def _parse_pin_response(resp: HttpResponse, op: str) -> PinResult:
    try:
        obj = json.loads(resp.body.decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        raise UploadError("non_json_response", {"op": op, "body": resp.text()}, kind=UploadFailure.INVALID_RESPONSE)

    if not isinstance(obj, dict):
        raise UploadError("bad_response_shape", {"op": op}, kind=UploadFailure.INVALID_RESPONSE)

    cid = obj.get("IpfsHash")
    v = validate_cid(cid)
    if not v.ok:
        raise UploadError(
            "missing_or_invalid_ipfs_hash",
            {"op": op, "cid": str(cid or "")[:128], "why": v.reason},
            kind=UploadFailure.INVALID_RESPONSE,
        )

    try:
        size = int(obj.get("PinSize") or 0)
    except (TypeError, ValueError):
        size = 0

    return PinResult(cid=v.cid, size_bytes=size, timestamp=str(obj.get("Timestamp") or ""))


class PinataClient:
    def __init__(
        self,
        *,
        jwt: str,
        api_base: str = "https://api.pinata.cloud",
        timeout_s: float = 30.0,
        transport: Optional[Transport] = None,
    ) -> None:
        self.jwt = (jwt or "").strip()
        self.api_base = (api_base or "https://api.pinata.cloud").rstrip("/")
        self.timeout_s = float(timeout_s)
        self._transport: Transport = transport or urllib_transport

    def _headers(self, extra: Optional[Dict[str, str]] = None) -> Dict[str, str]:
        h = {"Authorization": f"Bearer {self.jwt}", "Accept": "application/json"}
        if extra:
            h.update(extra)
        return h

    def _request(self, method: str, path: str, headers: Dict[str, str], body: Optional[bytes], op: str) -> HttpResponse:
        if not self.jwt:
            raise UploadError("missing_credentials", {"op": op}, kind=UploadFailure.AUTH_FAILURE)
        url = f"{self.api_base}{path}"
        try:
            resp = self._transport(method, url, headers, body, self.timeout_s)
        except HttpTransportError as e:
            raise UploadError("transport_error", {"op": op, "error": str(e)}, kind=UploadFailure.NETWORK_FAILURE) from e
        if not resp.ok:
            raise _classify_status(resp, op)
        return resp

    def test_authentication(self) -> bool:
        """Return True if the credentials are accepted; UploadError otherwise."""
        self._request("GET", "/data/testAuthentication", self._headers(), None, "test_authentication")
        log_event(_log, "pinata_auth_ok", api_base=self.api_base)
        return True

    def pin_file(
        self,
        *,
        filename: str,
        content: bytes,
        content_type: str,
        name: str = "",
        keyvalues: Optional[Json] = None,
    ) -> PinResult:
        fields = {
            "pinataMetadata": json.dumps({"name": name or filename, "keyvalues": dict(keyvalues or {})}),
            "pinataOptions": json.dumps({"cidVersion": 0}),
        }
        body, ctype = encode_multipart(
            fields,
            file_field="file",
            filename=filename or "upload",
            content=content,
            content_type=content_type,
        )
        resp = self._request(
            "POST",
            "/pinning/pinFileToIPFS",
            self._headers({"Content-Type": ctype}),
            body,
            "pin_file",
        )
        res = _parse_pin_response(resp, "pin_file")
        log_event(_log, "pinata_pin_file", cid=res.cid, size=len(content), filename=filename)
        return res

    def pin_json(self, content: Json, *, name: str = "", keyvalues: Optional[Json] = None) -> PinResult:
        payload = {
            "pinataContent": content,
            "pinataMetadata": {"name": name or "metadata.json", "keyvalues": dict(keyvalues or {})},
            "pinataOptions": {"cidVersion": 0},
        }
        body = json.dumps(payload, ensure_ascii=False).encode("utf-8")
        resp = self._request(
            "POST",
            "/pinning/pinJSONToIPFS",
            self._headers({"Content-Type": "application/json"}),
            body,
            "pin_json",
        )
        res = _parse_pin_response(resp, "pin_json")
        log_event(_log, "pinata_pin_json", cid=res.cid, size=len(body))
        return res
