# src/mintkit/storage/gateways.py
from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import List, Optional, Sequence

from mintkit.config import DEFAULT_GATEWAYS
from mintkit.storage.http import HttpTransportError, Transport, urllib_transport
from mintkit.util.cid import IPFS_SCHEME, require_cid
from mintkit.util.structured_logging import log_event

_log = logging.getLogger("mintkit.storage.gateways")

# Poll interval while waiting on a probe, so a cancel is noticed promptly.
_WAIT_SLICE_S = 0.05


@dataclass(frozen=True)
class GatewayProbeResult:
    endpoint: str
    url: str
    reachable: bool
    latency_ms: int
    http_status: int
    error: str = ""

    def to_json(self) -> dict:
        return {
            "endpoint": self.endpoint,
            "url": self.url,
            "reachable": self.reachable,
            "latency_ms": self.latency_ms,
            "http_status": self.http_status,
            "error": self.error,
        }


def gateway_url(endpoint: str, cid: str) -> str:
    return f"{endpoint.rstrip('/')}/{cid}"


def ipfs_to_https(uri: str, endpoint: str = DEFAULT_GATEWAYS[0]) -> str:
    """ipfs://<cid>[/path] -> <endpoint>/<cid>[/path]. Other URIs are returned unchanged."""
    u = (uri or "").strip()
    if not u.startswith(IPFS_SCHEME):
        return u
    rest = u[len(IPFS_SCHEME):]
    cid, _, path = rest.partition("/")
    out = gateway_url(endpoint, require_cid(cid))
    return f"{out}/{path}" if path else out


def _unreachable(endpoint: str, url: str, error: str, latency_ms: int = 0, status: int = 0) -> GatewayProbeResult:
    return GatewayProbeResult(endpoint=endpoint, url=url, reachable=False, latency_ms=latency_ms, http_status=status, error=error)


class GatewayResolver:
    """Resolve a reachable retrieval URL across independent gateways.

    Probes run concurrently, each bounded by `timeout_s`. The answer is the
    highest-priority endpoint that returned 2xx; when none did, the
    first-priority URL is returned anyway (content may still be propagating).
    """

    def __init__(
        self,
        gateways: Sequence[str] = DEFAULT_GATEWAYS,
        *,
        timeout_s: float = 5.0,
        transport: Optional[Transport] = None,
    ) -> None:
        gws = [g.rstrip("/") for g in gateways if g and g.strip()]
        if not gws:
            raise ValueError("at least one gateway endpoint is required")
        self.gateways: List[str] = gws
        self.timeout_s = float(timeout_s)
        self._transport: Transport = transport or urllib_transport

    def probe(self, endpoint: str, cid: str) -> GatewayProbeResult:
        url = gateway_url(endpoint, cid)
        started = time.monotonic()
        try:
            resp = self._transport("HEAD", url, {}, None, self.timeout_s)
            if int(resp.status) == 405:
                # Some gateways refuse HEAD; ask for a single byte instead.
                resp = self._transport("GET", url, {"Range": "bytes=0-0"}, None, self.timeout_s)
        except HttpTransportError as e:
            latency = int((time.monotonic() - started) * 1000)
            return _unreachable(endpoint, url, str(e), latency)

        latency = int((time.monotonic() - started) * 1000)
        if resp.ok:
            return GatewayProbeResult(endpoint=endpoint, url=url, reachable=True, latency_ms=latency, http_status=int(resp.status))
        return _unreachable(endpoint, url, f"http_{resp.status}", latency, int(resp.status))

    def _await(self, fut: "Future[GatewayProbeResult]", endpoint: str, url: str, deadline: float, cancel: Optional[threading.Event]) -> GatewayProbeResult:
        while True:
            if fut.done() and not fut.cancelled():
                return fut.result()
            if cancel is not None and cancel.is_set():
                fut.cancel()
                return _unreachable(endpoint, url, "cancelled")
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                fut.cancel()
                return _unreachable(endpoint, url, "timeout", int(self.timeout_s * 1000))
            try:
                return fut.result(timeout=min(_WAIT_SLICE_S, remaining))
            except FuturesTimeout:
                continue

    def _run(self, cid: str, cancel: Optional[threading.Event], stop_at_first: bool) -> List[GatewayProbeResult]:
        c = require_cid(cid)
        # One worker per endpoint, so every probe starts before the shared deadline below.
        pool = ThreadPoolExecutor(max_workers=len(self.gateways), thread_name_prefix="gw-probe")
        out: List[GatewayProbeResult] = []
        try:
            futs = [pool.submit(self.probe, g, c) for g in self.gateways]
            # Probes started together, so one shared deadline bounds every candidate.
            deadline = time.monotonic() + self.timeout_s
            for g, fut in zip(self.gateways, futs):
                res = self._await(fut, g, gateway_url(g, c), deadline, cancel)
                out.append(res)
                if stop_at_first and res.reachable:
                    break
        finally:
            pool.shutdown(wait=False, cancel_futures=True)
        return out

    def probe_all(self, cid: str, *, cancel: Optional[threading.Event] = None) -> List[GatewayProbeResult]:
        return self._run(cid, cancel, stop_at_first=False)

    def resolve(self, cid: str, *, cancel: Optional[threading.Event] = None) -> str:
        results = self._run(cid, cancel, stop_at_first=True)
        for r in results:
            if r.reachable:
                log_event(_log, "gateway_resolved", cid=cid, endpoint=r.endpoint, latency_ms=r.latency_ms)
                return r.url

        fallback = gateway_url(self.gateways[0], cid)
        log_event(
            _log,
            "gateway_unresolved",
            level=logging.WARNING,
            cid=cid,
            fallback=fallback,
            errors={r.endpoint: r.error for r in results},
        )
        return fallback
