# src/mintkit/storage/http.py
from __future__ import annotations

import socket
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from typing import Callable, Dict, Optional


@dataclass(frozen=True)
class HttpResponse:
    status: int
    body: bytes = b""
    headers: Dict[str, str] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= int(self.status) < 300

    def text(self, limit: int = 300) -> str:
        return self.body.decode("utf-8", errors="replace").strip()[:limit]


class HttpTransportError(RuntimeError):
    """No HTTP response was received (DNS, refused connection, timeout, TLS)."""


# (method, url, headers, body, timeout_s) -> HttpResponse
Transport = Callable[[str, str, Dict[str, str], Optional[bytes], float], HttpResponse]


def urllib_transport(
    method: str,
    url: str,
    headers: Dict[str, str],
    body: Optional[bytes],
    timeout_s: float,
) -> HttpResponse:
    """Default transport. Non-2xx answers are returned, not raised."""
    req = urllib.request.Request(url=url, method=method, data=body)
    for k, v in headers.items():
        req.add_header(k, v)

    try:
        with urllib.request.urlopen(req, timeout=timeout_s) as resp:
            status = int(getattr(resp, "status", 200))
            data = resp.read() if method != "HEAD" else b""
            return HttpResponse(status=status, body=data, headers=dict(resp.headers.items()))
    except urllib.error.HTTPError as e:
        try:
            data = e.read()
        except Exception:
            data = b""
        return HttpResponse(status=int(getattr(e, "code", 0) or 0), body=data or b"")
    except (urllib.error.URLError, socket.timeout, TimeoutError, ConnectionError) as e:
        raise HttpTransportError(str(getattr(e, "reason", e))) from e
    except OSError as e:
        raise HttpTransportError(str(e)) from e


def encode_multipart(fields: Dict[str, str], *, file_field: str, filename: str, content: bytes, content_type: str) -> tuple[bytes, str]:
    """Build a multipart/form-data body. Returns (body, content_type_header)."""
    boundary = "----mintkit-boundary-5c1e0a7d93b24f60"
    parts: list[bytes] = []
    for name, value in fields.items():
        parts.append(
            (
                f"--{boundary}\r\n"
                f'Content-Disposition: form-data; name="{name}"\r\n'
                f"\r\n"
                f"{value}\r\n"
            ).encode("utf-8")
        )
    parts.append(
        (
            f"--{boundary}\r\n"
            f'Content-Disposition: form-data; name="{file_field}"; filename="{filename}"\r\n'
            f"Content-Type: {content_type or 'application/octet-stream'}\r\n"
            f"\r\n"
        ).encode("utf-8")
    )
    parts.append(content)
    parts.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
    return b"".join(parts), f"multipart/form-data; boundary={boundary}"
