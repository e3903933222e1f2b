# src/mintkit/runtime/boot.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from mintkit.client.base import LedgerClient
from mintkit.client.local import LocalLedgerClient
from mintkit.config import MintConfig, load_mint_config
from mintkit.crypto.sig import Wallet
from mintkit.mint.orchestrator import MintOrchestrator, MintSession
from mintkit.runtime.chain import LocalChain
from mintkit.runtime.sqlite_db import SqliteChainStore, SqliteDB
from mintkit.storage.http import Transport
from mintkit.storage.publisher import ContentPublisher
from mintkit.util.structured_logging import log_event

_log = logging.getLogger("mintkit.runtime.boot")


@dataclass
class MintRuntime:
    """Everything one process needs to mint: ledger access, publication, orchestration."""

    cfg: MintConfig
    client: LedgerClient
    publisher: ContentPublisher
    session: MintSession
    orchestrator: MintOrchestrator
    # Set only for the in-process devnet.
    chain: Optional[LocalChain] = None
    owner: Optional[LocalLedgerClient] = None


def build_local_chain(cfg: MintConfig) -> LocalChain:
    store = SqliteChainStore(db=SqliteDB(path=cfg.db_path)) if cfg.db_path else None
    return LocalChain(chain_id=cfg.chain_id, store=store)


def build_runtime(cfg: Optional[MintConfig] = None, *, transport: Optional[Transport] = None) -> MintRuntime:
    """Build a MintRuntime from an explicit config or, if omitted, from the environment.

    Without MINTKIT_RPC_URL the registry runs on an in-process devnet: it is
    deployed on first boot (owned by the owner wallet) and the minting wallet
    is funded from the devnet faucet.
    """
    c = cfg or load_mint_config()
    publisher = ContentPublisher.from_config(c.publication, transport=transport)

    chain: Optional[LocalChain] = None
    owner: Optional[LocalLedgerClient] = None
    client: LedgerClient
    if c.uses_local_ledger:
        chain = build_local_chain(c)
        owner_wallet = Wallet(c.owner_key or None)
        if not chain.deployed:
            chain.deploy_registry(owner=owner_wallet.address)
            chain.fund(owner_wallet.address, c.devnet_fund_wei)
        wallet = Wallet(c.wallet_key or None)
        if chain.get_balance(wallet.address) == 0 and c.devnet_fund_wei > 0:
            chain.fund(wallet.address, c.devnet_fund_wei)
        client = LocalLedgerClient(chain, wallet)
        owner = LocalLedgerClient(chain, owner_wallet)
    else:
        from mintkit.client.evm import Web3LedgerClient

        if not c.contract_address:
            raise ValueError("MINTKIT_CONTRACT_ADDRESS is required with MINTKIT_RPC_URL")
        client = Web3LedgerClient.from_rpc_url(
            c.rpc_url,
            c.contract_address,
            timeout_s=c.read_timeout_s,
            private_key=c.wallet_key or None,
        )

    session = MintSession(client)
    orchestrator = MintOrchestrator(
        publisher,
        session,
        gas_margin_pct=c.gas_margin_pct,
        receipt_timeout_s=c.receipt_timeout_s,
        read_timeout_s=c.read_timeout_s,
        max_file_bytes=c.max_file_bytes,
        allowed_content_types=c.allowed_content_types,
    )
    log_event(
        _log,
        "runtime_booted",
        network=c.network,
        ledger="devnet" if chain is not None else "rpc",
        address=client.address,
        pinning=c.publication.pinning_enabled,
        allow_degraded=c.publication.allow_degraded,
    )
    return MintRuntime(cfg=c, client=client, publisher=publisher, session=session, orchestrator=orchestrator, chain=chain, owner=owner)
