# src/mintkit/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from mintkit.env import load_dotenv_if_present

# Priority order matters: the first entry is the best-effort answer when
# every probe fails.
DEFAULT_GATEWAYS: Tuple[str, ...] = (
    "https://ipfs.io/ipfs",
    "https://w3s.link/ipfs",
    "https://dweb.link/ipfs",
    "https://gateway.pinata.cloud/ipfs",
    "https://nftstorage.link/ipfs",
    "https://cf-ipfs.com/ipfs",
)

WEI_PER_ETHER = 10**18

DEFAULT_MAX_FILE_BYTES = 10 * 1024 * 1024
DEFAULT_ALLOWED_TYPES: Tuple[str, ...] = (
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/svg+xml",
)


def _is_truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_str(name: str, default: str = "") -> str:
    return (os.environ.get(name) or default).strip()


def _env_int(name: str, default: int) -> int:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return int(raw) if raw else int(default)
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    try:
        raw = str(os.environ.get(name, "")).strip()
        return float(raw) if raw else float(default)
    except Exception:
        return float(default)


def _env_bool(name: str, default: bool) -> bool:
    v = os.environ.get(name)
    if v is None:
        return bool(default)
    return _is_truthy(v)


def parse_gateways(raw: str) -> Tuple[str, ...]:
    """Parse a comma separated gateway list; empty input yields the defaults."""
    out = []
    seen = set()
    for part in (raw or "").split(","):
        g = part.strip().rstrip("/")
        if not g or g in seen:
            continue
        seen.add(g)
        out.append(g)
    return tuple(out) if out else DEFAULT_GATEWAYS


def parse_content_types(raw: str) -> Tuple[str, ...]:
    out = tuple(dict.fromkeys(p.strip().lower() for p in (raw or "").split(",") if p.strip()))
    return out or DEFAULT_ALLOWED_TYPES


@dataclass(frozen=True)
class PublicationConfig:
    pinata_jwt: str = field(default="", repr=False)
    pinata_api_base: str = "https://api.pinata.cloud"
    gateways: Tuple[str, ...] = DEFAULT_GATEWAYS
    gateway_timeout_s: float = 5.0
    upload_timeout_s: float = 30.0
    allow_degraded: bool = True

    @property
    def pinning_enabled(self) -> bool:
        return bool(self.pinata_jwt)


@dataclass(frozen=True)
class MintConfig:
    mode: str = "dev"  # "dev" | "prod"
    network: str = "devnet"
    chain_id: int = 31337
    contract_address: str = ""
    rpc_url: str = ""
    db_path: Optional[str] = None

    gas_margin_pct: int = 20
    receipt_timeout_s: float = 120.0
    read_timeout_s: float = 15.0

    # Asset admission, checked before anything is published.
    max_file_bytes: int = DEFAULT_MAX_FILE_BYTES
    allowed_content_types: Tuple[str, ...] = DEFAULT_ALLOWED_TYPES

    # Signing keys (hex). Empty means generate one for the devnet.
    wallet_key: str = field(default="", repr=False)
    owner_key: str = field(default="", repr=False)
    devnet_fund_wei: int = 10 * WEI_PER_ETHER

    publication: PublicationConfig = field(default_factory=PublicationConfig)

    @property
    def uses_local_ledger(self) -> bool:
        return not self.rpc_url


def load_publication_config() -> PublicationConfig:
    return PublicationConfig(
        pinata_jwt=_env_str("MINTKIT_PINATA_JWT"),
        pinata_api_base=_env_str("MINTKIT_PINATA_API_BASE", "https://api.pinata.cloud").rstrip("/"),
        gateways=parse_gateways(_env_str("MINTKIT_GATEWAYS")),
        gateway_timeout_s=_env_float("MINTKIT_GATEWAY_TIMEOUT_S", 5.0),
        upload_timeout_s=_env_float("MINTKIT_UPLOAD_TIMEOUT_S", 30.0),
        allow_degraded=_env_bool("MINTKIT_ALLOW_DEGRADED", True),
    )


def load_mint_config() -> MintConfig:
    """Build MintConfig from the environment (after a best-effort .env load).

    Malformed numeric values fall back to defaults rather than failing startup.
    """
    load_dotenv_if_present()

    mode = _env_str("MINTKIT_MODE", "dev").lower()
    db_path = _env_str("MINTKIT_DB_PATH") or None

    margin = _env_int("MINTKIT_GAS_MARGIN_PCT", 20)
    if margin < 0:
        margin = 20
    max_file_bytes = _env_int("MINTKIT_MAX_FILE_BYTES", DEFAULT_MAX_FILE_BYTES)
    if max_file_bytes <= 0:
        max_file_bytes = DEFAULT_MAX_FILE_BYTES

    return MintConfig(
        mode=mode,
        network=_env_str("MINTKIT_NETWORK", "devnet"),
        chain_id=_env_int("MINTKIT_CHAIN_ID", 31337),
        contract_address=_env_str("MINTKIT_CONTRACT_ADDRESS"),
        rpc_url=_env_str("MINTKIT_RPC_URL"),
        db_path=db_path,
        gas_margin_pct=margin,
        receipt_timeout_s=_env_float("MINTKIT_RECEIPT_TIMEOUT_S", 120.0),
        read_timeout_s=_env_float("MINTKIT_READ_TIMEOUT_S", 15.0),
        max_file_bytes=max_file_bytes,
        allowed_content_types=parse_content_types(_env_str("MINTKIT_ALLOWED_TYPES")),
        wallet_key=_env_str("MINTKIT_WALLET_KEY"),
        owner_key=_env_str("MINTKIT_OWNER_KEY"),
        devnet_fund_wei=_env_int("MINTKIT_DEVNET_FUND_WEI", 10 * WEI_PER_ETHER),
        publication=load_publication_config(),
    )
