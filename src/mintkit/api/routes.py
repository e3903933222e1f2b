# src/mintkit/api/routes.py
from __future__ import annotations

from typing import Any, Dict

from fastapi import APIRouter, File, Form, Request, UploadFile

from mintkit.api.errors import ApiError
from mintkit.api.schemas import GatewaysResponse, HealthResponse, MintResponse, RegistryResponse, TokenResponse
from mintkit.client.base import LedgerReadError
from mintkit.ledger.errors import RegistryErrorCode
from mintkit.mint.orchestrator import MintRequest
from mintkit.runtime.boot import MintRuntime
from mintkit.storage.publisher import AssetFile

Json = Dict[str, Any]

router = APIRouter()


def _runtime(request: Request) -> MintRuntime:
    rt = getattr(request.app.state, "runtime", None)
    if rt is None:
        raise ApiError.internal("not_ready", "runtime not attached to app.state", {})
    return rt


def _read_failed(e: LedgerReadError) -> ApiError:
    details: Json = dict(e.details or {})
    if e.revert is not None:
        details["revert"] = e.revert.value
    if e.revert == RegistryErrorCode.NONEXISTENT_TOKEN:
        return ApiError.not_found("token_not_found", "token does not exist", details)
    return ApiError(502, "ledger_read_failed", e.reason, details)


@router.get("/health", response_model=HealthResponse)
def health(request: Request) -> Json:
    rt = _runtime(request)
    return {
        "ok": True,
        "network": rt.cfg.network,
        "ledger": "devnet" if rt.chain is not None else "rpc",
        "address": rt.client.address,
        "pinning": rt.cfg.publication.pinning_enabled,
        "mint_state": rt.session.state.value,
        "mint_in_flight": rt.session.in_flight,
    }


@router.get("/registry", response_model=RegistryResponse)
def registry(request: Request) -> Json:
    rt = _runtime(request)
    try:
        cfg = rt.client.registry_config()
    except LedgerReadError as e:
        raise _read_failed(e) from e
    return {"ok": True, **cfg.to_json()}


@router.get("/tokens/{token_id}", response_model=TokenResponse)
def token(token_id: int, request: Request) -> Json:
    rt = _runtime(request)
    if token_id < 1:
        raise ApiError.bad_request("invalid_token_id", "token ids start at 1", {"token_id": token_id})
    try:
        owner = rt.client.owner_of(token_id)
        record = rt.client.token_record(token_id)
    except LedgerReadError as e:
        raise _read_failed(e) from e
    out: Json = {"ok": True, "token_id": token_id, "owner": owner}
    if record is not None:
        out.update(record.to_json())
    return out


@router.get("/gateways/{cid}", response_model=GatewaysResponse)
def gateways(cid: str, request: Request) -> Json:
    rt = _runtime(request)
    probes = rt.publisher.probe_gateways(cid)
    resolved = next((p.url for p in probes if p.reachable), probes[0].url if probes else "")
    return {"ok": True, "cid": cid, "resolved_url": resolved, "probes": [p.to_json() for p in probes]}


@router.post("/mint", response_model=MintResponse)
def mint(
    request: Request,
    file: UploadFile = File(...),
    name: str = Form(""),
    description: str = Form(""),
) -> Json:
    rt = _runtime(request)
    content = file.file.read()
    asset = AssetFile(
        filename=file.filename or "upload",
        content=content,
        content_type=file.content_type or "application/octet-stream",
    )
    result = rt.orchestrator.mint(MintRequest(file=asset, name=name, description=description))
    out = result.to_json()
    out["ok"] = True
    out["state_history"] = [t.current.value for t in rt.session.history]
    return out
