from __future__ import annotations

import dataclasses
import time

import pytest

from mintkit.client.base import LedgerReadError, ReceiptTimeout
from mintkit.client.local import LocalLedgerClient
from mintkit.config import DEFAULT_MAX_FILE_BYTES
from mintkit.errors import (
    EstimationError,
    ExecutionError,
    IntegrityError,
    MintInProgress,
    PreflightError,
    ResolutionError,
    SubmissionError,
    SubmissionFailure,
    UploadError,
    ValidationError,
)
from mintkit.ledger.errors import RegistryErrorCode
from mintkit.ledger.registry import ZERO_ADDRESS
from mintkit.ledger.types import LogEntry, RegistryConfig, TokenRecord, TxReceipt
from mintkit.mint.orchestrator import (
    MintOrchestrator,
    MintRequest,
    MintSession,
    MintTransactionState,
    issued_token_ids,
    margined_gas_limit,
)
from mintkit.storage.http import HttpResponse
from mintkit.storage.publisher import AssetFile
from mintkit.testing.fakes import CID_V0, CID_V1, FakeTransport, devnet_runtime, pin_ok

S = MintTransactionState

CAT = AssetFile(filename="cat.png", content=b"\x89PNG" + b"\x01" * 512, content_type="image/png")

HAPPY_PATH = [
    S.VALIDATING,
    S.PUBLISHING_ASSET,
    S.PUBLISHING_METADATA,
    S.ESTIMATING_COST,
    S.SUBMITTING,
    S.CONFIRMING,
    S.RESOLVING_IDENTIFIER,
    S.COMPLETE,
]


def _states(rt) -> list:
    return [t.current for t in rt.session.history]


def _pinning_transport(image_cid: str = CID_V0, metadata_cid: str = CID_V1) -> FakeTransport:
    t = FakeTransport()
    t.add("POST", "https://pinata.test/pinning/pinFileToIPFS", pin_ok(image_cid))
    t.add("POST", "https://pinata.test/pinning/pinJSONToIPFS", pin_ok(metadata_cid))
    return t


def _owner_tx(rt, method: str, args: list) -> None:
    h = rt.owner.transact(method, args, gas_limit=200_000)
    assert rt.chain.get_receipt(h)["status"] == 1


def test_fresh_registry_mint_issues_token_one() -> None:
    rt = devnet_runtime(transport=_pinning_transport(), pinata_jwt="jwt")
    before = rt.client.registry_config()
    assert before.next_token_id == 1

    res = rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))

    assert res.token_id == before.next_token_id == 1
    assert res.degraded is False
    assert res.content_uri == f"ipfs://{CID_V1}"
    assert res.transaction_hash.startswith("0x")
    assert rt.client.owner_of(1) == rt.client.address

    after = rt.client.registry_config()
    assert after.next_token_id == before.next_token_id + 1
    assert after.total_supply == after.next_token_id - 1 == 1

    rec = rt.client.token_record(1)
    assert rec is not None
    assert rec.name == "Art"
    assert rec.description == "desc"
    assert rec.image_uri == f"ipfs://{CID_V0}"
    assert rec.minter_address == rt.client.address
    assert rt.chain.call("token_uri", [1]) == f"ipfs://{CID_V1}"

    assert rt.session.state == S.COMPLETE
    assert _states(rt) == HAPPY_PATH


def test_gas_limit_carries_the_margin() -> None:
    rt = devnet_runtime()
    res = rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    # No state change between estimate and inclusion, so gas_used == estimate.
    assert res.gas_limit == margined_gas_limit(res.gas_used, 20)
    assert res.gas_limit > res.gas_used


def test_margin_rounds_up() -> None:
    assert margined_gas_limit(100, 20) == 120
    assert margined_gas_limit(101, 20) == 122
    assert margined_gas_limit(100, 0) == 100


def test_pinning_auth_failure_still_mints_with_synthetic_identifier() -> None:
    t = FakeTransport()
    t.add("POST", "https://pinata.test/pinning/pinFileToIPFS", HttpResponse(status=401))
    t.add("POST", "https://pinata.test/pinning/pinJSONToIPFS", HttpResponse(status=401))
    rt = devnet_runtime(transport=t, pinata_jwt="expired")

    res = rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))

    assert res.degraded is True
    assert res.image.provider == "synthetic"
    assert rt.client.token_record(res.token_id).image_uri == res.image.protocol_uri
    assert rt.chain.call("token_uri", [res.token_id]) == res.metadata.protocol_uri


def test_degraded_disabled_surfaces_upload_error_before_any_ledger_call() -> None:
    t = FakeTransport().add("POST", "https://pinata.test/pinning/pinFileToIPFS", HttpResponse(status=500))
    rt = devnet_runtime(transport=t, pinata_jwt="jwt", allow_degraded=False)

    with pytest.raises(UploadError):
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert _states(rt) == [S.VALIDATING, S.PUBLISHING_ASSET, S.FAILED]
    assert rt.chain.block_number == 0


def test_name_and_description_defaults() -> None:
    rt = devnet_runtime()
    res = rt.orchestrator.mint(MintRequest(file=CAT))
    rec = rt.client.token_record(res.token_id)
    assert rec.name == "cat"
    assert rec.description == "cat - Created with mintkit"


@pytest.mark.parametrize(
    "request_,reason",
    [
        (MintRequest(file=None, name="Art"), "missing_file"),
        (MintRequest(file=AssetFile(filename="a.png", content=b""), name="Art"), "empty_file"),
        (MintRequest(file=AssetFile(filename="", content=b"x", content_type="image/png"), name="  "), "empty_name"),
        (MintRequest(file=AssetFile(filename="big.png", content=b"\x00" * (DEFAULT_MAX_FILE_BYTES + 1)), name="Art"), "file_too_large"),
        (MintRequest(file=AssetFile(filename="doc.pdf", content=b"%PDF-1.7", content_type="application/pdf"), name="Art"), "unsupported_file_type"),
        (MintRequest(file=AssetFile(filename="notes.txt", content=b"hello"), name="Art"), "unsupported_file_type"),
    ],
)
def test_validation_fails_without_network(request_: MintRequest, reason: str) -> None:
    t = FakeTransport()
    rt = devnet_runtime(transport=t, pinata_jwt="jwt")
    with pytest.raises(ValidationError) as ei:
        rt.orchestrator.mint(request_)
    assert ei.value.reason == reason
    assert t.calls == []
    assert _states(rt) == [S.VALIDATING, S.FAILED]


def test_missing_wallet_session_is_a_validation_error() -> None:
    rt = devnet_runtime()
    orch = MintOrchestrator(rt.publisher, MintSession(None))
    with pytest.raises(ValidationError) as ei:
        orch.mint(MintRequest(file=CAT, name="Art"))
    assert ei.value.reason == "no_wallet_session"


def test_configured_file_limits_apply() -> None:
    rt = devnet_runtime()
    orch = MintOrchestrator(rt.publisher, rt.session, max_file_bytes=64, allowed_content_types=("image/png",))

    with pytest.raises(ValidationError) as ei:
        orch.mint(MintRequest(file=AssetFile(filename="a.png", content=b"\x00" * 65), name="Art"))
    assert ei.value.reason == "file_too_large"
    assert ei.value.details["max_bytes"] == 64

    with pytest.raises(ValidationError) as ei:
        orch.mint(MintRequest(file=AssetFile(filename="a.gif", content=b"GIF89a"), name="Art"))
    assert ei.value.reason == "unsupported_file_type"
    assert ei.value.details["content_type"] == "image/gif"

    # A generic upload type falls back to the filename.
    res = orch.mint(MintRequest(file=AssetFile(filename="a.png", content=b"\x89PNG", content_type="application/octet-stream"), name="Art"))
    assert res.token_id == 1


def test_disabled_minting_fails_preflight_and_recovers_after_toggle() -> None:
    rt = devnet_runtime()
    _owner_tx(rt, "toggle_minting", [False])
    balance = rt.client.balance()

    with pytest.raises(PreflightError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert ei.value.revert == RegistryErrorCode.MINTING_DISABLED
    assert rt.client.balance() == balance
    assert rt.client.next_token_id() == 1
    assert rt.session.state == S.FAILED

    _owner_tx(rt, "toggle_minting", [True])
    res = rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert res.token_id == 1


def test_exhausted_supply_fails_preflight() -> None:
    rt = devnet_runtime(max_supply=1)
    rt.orchestrator.mint(MintRequest(file=CAT, name="One", description="d"))
    with pytest.raises(PreflightError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Two", description="d"))
    assert ei.value.revert == RegistryErrorCode.SUPPLY_EXCEEDED
    assert rt.client.registry_config().total_supply == 1


def test_insufficient_balance_fails_preflight() -> None:
    rt = devnet_runtime(fund_wei=0)
    with pytest.raises(PreflightError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert ei.value.reason == "insufficient_balance"
    assert ei.value.revert is None


class _StaleConfigClient(LocalLedgerClient):
    """Reports a registry snapshot taken before other mints landed."""

    def __init__(self, chain, wallet, snapshot: RegistryConfig) -> None:
        super().__init__(chain, wallet)
        self._snapshot = snapshot

    def registry_config(self) -> RegistryConfig:
        return self._snapshot


def test_estimation_revert_is_classified_and_nothing_is_broadcast() -> None:
    rt = devnet_runtime(max_supply=1)
    stale = rt.client.registry_config()
    _owner_tx(rt, "owner_issue", [rt.owner.address, "ipfs://reserved"])

    client = _StaleConfigClient(rt.chain, rt.client.wallet, stale)
    rt.session.switch_account(client)
    block = rt.chain.block_number

    with pytest.raises(EstimationError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))

    assert ei.value.revert == RegistryErrorCode.SUPPLY_EXCEEDED
    assert ei.value.reason == "SupplyExceeded"
    assert rt.chain.block_number == block
    assert rt.chain.get_nonce(client.address) == 0
    assert S.SUBMITTING not in _states(rt)
    assert _states(rt)[-1] == S.FAILED


def test_user_declining_the_signature_is_a_submission_error() -> None:
    prompts = []

    def decline(tx: dict) -> bool:
        prompts.append(tx)
        return False

    rt = devnet_runtime(approve=decline)
    with pytest.raises(SubmissionError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))

    assert ei.value.kind == SubmissionFailure.USER_DECLINED
    assert len(prompts) == 1
    assert prompts[0]["method"] == "mint_with_content"
    assert prompts[0]["value"] == rt.client.registry_config().fee
    assert rt.chain.block_number == 0
    assert _states(rt)[-2:] == [S.SUBMITTING, S.FAILED]


def test_revert_after_inclusion_is_an_execution_error() -> None:
    rt = devnet_runtime()

    def disable_before_broadcast(t) -> None:
        if t.current == S.SUBMITTING:
            _owner_tx(rt, "toggle_minting", [False])

    rt.session.add_listener(disable_before_broadcast)
    with pytest.raises(ExecutionError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))

    assert ei.value.reason == "included_but_execution_failed"
    assert ei.value.revert == RegistryErrorCode.MINTING_DISABLED
    assert rt.chain.get_nonce(rt.client.address) == 1
    assert rt.client.next_token_id() == 1
    assert _states(rt)[-2:] == [S.CONFIRMING, S.FAILED]


class _WrongOwnerClient(LocalLedgerClient):
    def owner_of(self, token_id: int) -> str:
        return ZERO_ADDRESS


def test_ownership_mismatch_is_a_resolution_error() -> None:
    rt = devnet_runtime()
    rt.session.switch_account(_WrongOwnerClient(rt.chain, rt.client.wallet))
    with pytest.raises(ResolutionError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert ei.value.reason == "owner_mismatch"
    assert ei.value.details["token_id"] == 1
    assert _states(rt)[-2:] == [S.RESOLVING_IDENTIFIER, S.FAILED]


class _WrongRecordClient(LocalLedgerClient):
    def token_record(self, token_id: int):
        rec = super().token_record(token_id)
        return TokenRecord(**{**rec.to_json(), "image_uri": f"ipfs://{CID_V1}"})


def test_record_pointing_elsewhere_is_an_integrity_error() -> None:
    rt = devnet_runtime()
    rt.session.switch_account(_WrongRecordClient(rt.chain, rt.client.wallet))
    with pytest.raises(IntegrityError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert ei.value.reason == "record_image_mismatch"


class _EventlessReceiptClient(LocalLedgerClient):
    """Receipts come back without any issuance logs."""

    def wait_for_receipt(self, tx_hash: str, *, timeout_s: float) -> TxReceipt:
        return dataclasses.replace(super().wait_for_receipt(tx_hash, timeout_s=timeout_s), logs=[])


class _EventlessWrongOwnerClient(_EventlessReceiptClient, _WrongOwnerClient):
    pass


def test_receipt_without_events_falls_back_to_the_counter() -> None:
    rt = devnet_runtime()
    rt.orchestrator.mint(MintRequest(file=CAT, name="First", description="desc"))

    rt.session.switch_account(_EventlessReceiptClient(rt.chain, rt.client.wallet))
    res = rt.orchestrator.mint(MintRequest(file=CAT, name="Second", description="desc"))

    assert res.token_id == rt.client.next_token_id() - 1 == 2
    assert rt.client.owner_of(2) == rt.client.address
    assert rt.client.token_record(2).name == "Second"


def test_counter_fallback_is_still_owner_verified() -> None:
    rt = devnet_runtime()
    rt.session.switch_account(_EventlessWrongOwnerClient(rt.chain, rt.client.wallet))
    with pytest.raises(ResolutionError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert ei.value.reason == "owner_mismatch"
    assert ei.value.details["source"] == "counter"
    assert ei.value.details["token_id"] == 1


class _StuckReceiptClient(LocalLedgerClient):
    def wait_for_receipt(self, tx_hash: str, *, timeout_s: float) -> TxReceipt:
        raise ReceiptTimeout("receipt_timeout", None, {"tx_hash": tx_hash, "timeout_s": timeout_s})


class _BrokenReceiptClient(LocalLedgerClient):
    def wait_for_receipt(self, tx_hash: str, *, timeout_s: float) -> TxReceipt:
        raise LedgerReadError("receipt_read_failed", None, {"tx_hash": tx_hash, "error": "node went away"})


def test_missing_receipt_is_a_confirmation_timeout() -> None:
    rt = devnet_runtime()
    rt.session.switch_account(_StuckReceiptClient(rt.chain, rt.client.wallet))
    with pytest.raises(ExecutionError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))

    assert ei.value.reason == "confirmation_timeout"
    assert ei.value.details["tx_hash"].startswith("0x")
    # The transaction was broadcast; only the wait gave up.
    assert rt.chain.get_nonce(rt.client.address) == 1
    assert _states(rt)[-2:] == [S.CONFIRMING, S.FAILED]


def test_receipt_read_failure_is_an_execution_error() -> None:
    rt = devnet_runtime()
    rt.session.switch_account(_BrokenReceiptClient(rt.chain, rt.client.wallet))
    with pytest.raises(ExecutionError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert ei.value.reason == "receipt_read_failed"
    assert ei.value.details["error"] == "node went away"


def test_second_concurrent_mint_is_rejected() -> None:
    rt = devnet_runtime()
    rejected = []

    def reenter(t) -> None:
        if t.current == S.PUBLISHING_ASSET:
            try:
                rt.orchestrator.mint(MintRequest(file=CAT, name="Again", description="d"))
            except MintInProgress as e:
                rejected.append(e)

    rt.session.add_listener(reenter)
    res = rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))

    assert res.token_id == 1
    assert len(rejected) == 1
    assert rt.client.next_token_id() == 2
    assert rt.session.in_flight is False


def test_switching_account_cancels_preflight_reads() -> None:
    rt = devnet_runtime()
    other = LocalLedgerClient(rt.chain, rt.owner.wallet)

    def switch(t) -> None:
        if t.current == S.ESTIMATING_COST:
            rt.session.switch_account(other)

    rt.session.add_listener(switch)
    with pytest.raises(PreflightError) as ei:
        rt.orchestrator.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert ei.value.reason == "cancelled"
    assert rt.chain.block_number == 0
    assert rt.session.client is other


class _SlowBalanceClient(LocalLedgerClient):
    def balance(self) -> int:
        time.sleep(1.0)
        return super().balance()


def test_preflight_reads_are_time_boxed() -> None:
    rt = devnet_runtime()
    orch = MintOrchestrator(rt.publisher, MintSession(_SlowBalanceClient(rt.chain, rt.client.wallet)), read_timeout_s=0.2)

    started = time.monotonic()
    with pytest.raises(PreflightError) as ei:
        orch.mint(MintRequest(file=CAT, name="Art", description="desc"))
    assert ei.value.reason == "read_timeout"
    assert time.monotonic() - started < 0.9


def test_sequential_mints_follow_the_counter() -> None:
    rt = devnet_runtime()
    ids = [rt.orchestrator.mint(MintRequest(file=CAT, name=f"Art {i}", description="d")).token_id for i in range(3)]
    assert ids == [1, 2, 3]
    assert rt.client.registry_config().total_supply == 3


def test_issued_token_ids_prefers_transfer_events() -> None:
    me = "0x" + "ab" * 20
    other = "0x" + "cd" * 20
    receipt = TxReceipt(
        transaction_hash="0x01",
        status=1,
        block_number=1,
        gas_used=1,
        logs=[
            LogEntry("Transfer", {"from": ZERO_ADDRESS, "to": other, "token_id": 6}),
            LogEntry("Transfer", {"from": ZERO_ADDRESS, "to": me, "token_id": 7}),
            LogEntry("Minted", {"token_id": 7, "owner": me, "uri": "ipfs://x"}),
            LogEntry("Transfer", {"from": other, "to": me, "token_id": 3}),
        ],
    )
    assert issued_token_ids(receipt, me) == [7]

    minted_only = TxReceipt("0x02", 1, 2, 1, [LogEntry("ContentMinted", {"token_id": 9, "minter": me.upper().replace("0X", "0x")})])
    assert issued_token_ids(minted_only, me) == [9]

    assert issued_token_ids(TxReceipt("0x03", 1, 3, 1, []), me) == []
