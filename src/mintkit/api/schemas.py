from __future__ import annotations

"""Pydantic response schemas for the HTTP API.

These exist for OpenAPI docs and response validation only; the pipeline's
own types live in mintkit.mint / mintkit.storage / mintkit.ledger.
"""

from typing import List, Optional

from pydantic import BaseModel, Field


class HealthResponse(BaseModel):
    ok: bool = True
    network: str
    ledger: str = Field(..., description="'devnet' or 'rpc'")
    address: str
    pinning: bool
    mint_state: str
    mint_in_flight: bool


class RegistryResponse(BaseModel):
    ok: bool = True
    fee: int
    max_supply: int
    minting_enabled: bool
    next_token_id: int
    total_supply: int


class TokenResponse(BaseModel):
    ok: bool = True
    token_id: int
    owner: str
    name: str = ""
    description: str = ""
    image_uri: str = ""
    mint_timestamp: int = 0
    minter_address: str = ""
    content_hash: str = ""


class GatewayProbe(BaseModel):
    endpoint: str
    url: str
    reachable: bool
    latency_ms: int
    http_status: int
    error: str = ""


class GatewaysResponse(BaseModel):
    ok: bool = True
    cid: str
    resolved_url: str
    probes: List[GatewayProbe]


class UploadResultModel(BaseModel):
    content_identifier: str
    canonical_url: str
    alternate_urls: List[str]
    protocol_uri: str
    degraded: bool
    provider: str = ""
    size_bytes: int = 0


class MintResponse(BaseModel):
    ok: bool = True
    token_id: int
    transaction_hash: str
    content_uri: str
    degraded: bool
    image: UploadResultModel
    metadata: UploadResultModel
    block_number: int = 0
    gas_limit: int = 0
    gas_used: int = 0
    state_history: Optional[List[str]] = None
