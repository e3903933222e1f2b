from __future__ import annotations

from pathlib import Path

import pytest

from mintkit.config import (
    DEFAULT_GATEWAYS,
    DEFAULT_MAX_FILE_BYTES,
    MintConfig,
    PublicationConfig,
    load_mint_config,
    parse_gateways,
)
from mintkit.env import load_dotenv_if_present, reset_dotenv_state
from mintkit.mint.orchestrator import MintRequest
from mintkit.runtime.boot import build_runtime
from mintkit.storage.publisher import AssetFile, PinataStrategy, SyntheticStrategy
from mintkit.testing.fakes import FakeTransport, deterministic_key, deterministic_wallet


def test_defaults_without_environment() -> None:
    cfg = load_mint_config()
    assert cfg.mode == "dev"
    assert cfg.network == "devnet"
    assert cfg.chain_id == 31337
    assert cfg.gas_margin_pct == 20
    assert cfg.receipt_timeout_s == 120.0
    assert cfg.uses_local_ledger is True
    assert cfg.publication.gateways == DEFAULT_GATEWAYS
    assert cfg.publication.gateway_timeout_s == 5.0
    assert cfg.publication.allow_degraded is True
    assert cfg.publication.pinning_enabled is False
    assert cfg.max_file_bytes == DEFAULT_MAX_FILE_BYTES == 10 * 1024 * 1024
    assert "image/svg+xml" in cfg.allowed_content_types


def test_environment_overrides(monkeypatch) -> None:
    monkeypatch.setenv("MINTKIT_NETWORK", "sepolia")
    monkeypatch.setenv("MINTKIT_CHAIN_ID", "11155111")
    monkeypatch.setenv("MINTKIT_CONTRACT_ADDRESS", "0x" + "12" * 20)
    monkeypatch.setenv("MINTKIT_RPC_URL", "https://rpc.example")
    monkeypatch.setenv("MINTKIT_PINATA_JWT", "secret-jwt")
    monkeypatch.setenv("MINTKIT_GATEWAYS", "https://a.test/ipfs/, https://b.test/ipfs,https://a.test/ipfs")
    monkeypatch.setenv("MINTKIT_ALLOW_DEGRADED", "no")
    monkeypatch.setenv("MINTKIT_GAS_MARGIN_PCT", "35")
    monkeypatch.setenv("MINTKIT_WALLET_KEY", "ab" * 32)
    monkeypatch.setenv("MINTKIT_MAX_FILE_BYTES", "2048")
    monkeypatch.setenv("MINTKIT_ALLOWED_TYPES", "image/PNG, image/webp,image/png")

    cfg = load_mint_config()
    assert cfg.network == "sepolia"
    assert cfg.chain_id == 11155111
    assert cfg.uses_local_ledger is False
    assert cfg.gas_margin_pct == 35
    assert cfg.max_file_bytes == 2048
    assert cfg.allowed_content_types == ("image/png", "image/webp")
    assert cfg.publication.pinning_enabled is True
    assert cfg.publication.allow_degraded is False
    assert cfg.publication.gateways == ("https://a.test/ipfs", "https://b.test/ipfs")
    # Keys never show up in reprs (and therefore logs).
    assert "ab" * 32 not in repr(cfg)
    assert "secret-jwt" not in repr(cfg)


def test_malformed_numbers_fall_back_to_defaults(monkeypatch) -> None:
    monkeypatch.setenv("MINTKIT_CHAIN_ID", "not-a-number")
    monkeypatch.setenv("MINTKIT_GATEWAY_TIMEOUT_S", "soon")
    monkeypatch.setenv("MINTKIT_MAX_FILE_BYTES", "0")
    monkeypatch.setenv("MINTKIT_GAS_MARGIN_PCT", "-5")
    cfg = load_mint_config()
    assert cfg.max_file_bytes == DEFAULT_MAX_FILE_BYTES
    assert cfg.chain_id == 31337
    assert cfg.publication.gateway_timeout_s == 5.0
    assert cfg.gas_margin_pct == 20


def test_parse_gateways_empty_yields_defaults() -> None:
    assert parse_gateways("") == DEFAULT_GATEWAYS
    assert parse_gateways(" , ") == DEFAULT_GATEWAYS


def test_dotenv_is_loaded_once_without_overriding(tmp_path: Path, monkeypatch) -> None:
    env = tmp_path / ".env"
    env.write_text("MINTKIT_NETWORK=from-dotenv\nMINTKIT_CHAIN_ID=5\n", encoding="utf-8")
    monkeypatch.setenv("MINTKIT_CHAIN_ID", "7")
    # set-then-delete registers the var, so the dotenv value is removed on teardown
    monkeypatch.setenv("MINTKIT_NETWORK", "")
    monkeypatch.delenv("MINTKIT_NETWORK")
    reset_dotenv_state()

    assert load_dotenv_if_present(str(env)) is True
    assert load_dotenv_if_present(str(env)) is False

    cfg = load_mint_config()
    assert cfg.network == "from-dotenv"
    assert cfg.chain_id == 7


def test_boot_devnet_runtime_from_config(tmp_path: Path) -> None:
    owner = deterministic_wallet("boot-owner")
    minter = deterministic_wallet("boot-minter")
    cfg = MintConfig(
        db_path=str(tmp_path / "devnet.db"),
        wallet_key=deterministic_key("boot-minter"),
        owner_key=deterministic_key("boot-owner"),
        publication=PublicationConfig(gateways=("https://gw.test/ipfs",)),
    )

    rt = build_runtime(cfg, transport=FakeTransport())
    assert rt.chain is not None and rt.owner is not None
    assert rt.client.address == minter.address
    assert rt.chain.call("owner") == owner.address
    assert rt.client.balance() == cfg.devnet_fund_wei
    assert [type(s) for s in rt.publisher.strategies] == [SyntheticStrategy]

    res = rt.orchestrator.mint(MintRequest(file=AssetFile(filename="a.png", content=b"png"), name="A"))
    assert res.token_id == 1

    # Second boot on the same database keeps the registry and does not re-fund.
    rt2 = build_runtime(cfg, transport=FakeTransport())
    assert rt2.client.next_token_id() == 2
    assert rt2.client.balance() == rt.client.balance()


def test_boot_with_pinning_orders_strategies() -> None:
    cfg = MintConfig(publication=PublicationConfig(pinata_jwt="jwt", allow_degraded=True))
    rt = build_runtime(cfg, transport=FakeTransport())
    assert [type(s) for s in rt.publisher.strategies] == [PinataStrategy, SyntheticStrategy]

    strict = build_runtime(MintConfig(publication=PublicationConfig(pinata_jwt="jwt", allow_degraded=False)), transport=FakeTransport())
    assert [type(s) for s in strict.publisher.strategies] == [PinataStrategy]


def test_rpc_mode_requires_contract_address() -> None:
    with pytest.raises(ValueError):
        build_runtime(MintConfig(rpc_url="http://127.0.0.1:8545"))
