# src/mintkit/mint/orchestrator.py
from __future__ import annotations

"""mintkit.mint.orchestrator

Single-flight mint pipeline:

  Idle -> Validating -> PublishingAsset -> PublishingMetadata -> EstimatingCost
       -> Submitting -> Confirming -> ResolvingIdentifier -> Complete
  any step -> Failed (the error is re-raised unchanged)

Rules:
  - one pipeline per MintSession; a second concurrent call gets MintInProgress
  - nothing fee-bearing happens before preflight and estimation succeed
  - once the transaction is broadcast, aborts are ignored; we only await it
  - a token id is returned only after owner_of(token_id) == caller
  - no retries; published content is not rolled back on failure
"""

import logging
import threading
import time
from concurrent.futures import FIRST_EXCEPTION, Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

from mintkit.client.base import LedgerClient, LedgerReadError, ReceiptTimeout
from mintkit.config import DEFAULT_ALLOWED_TYPES, DEFAULT_MAX_FILE_BYTES
from mintkit.errors import (
    ExecutionError,
    IntegrityError,
    MintError,
    MintInProgress,
    PreflightError,
    ResolutionError,
    ValidationError,
)
from mintkit.ledger.errors import RegistryErrorCode, registry_error_code
from mintkit.ledger.registry import ZERO_ADDRESS
from mintkit.ledger.types import MintCall, RegistryConfig, TxReceipt
from mintkit.storage.publisher import AssetFile, AssetUploadResult, ContentPublisher
from mintkit.util.cid import protocol_uri
from mintkit.util.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("mintkit.mint")

DEFAULT_DESCRIPTION_SUFFIX = "Created with mintkit"

# Poll interval while joining preflight reads, so an abort is noticed promptly.
_JOIN_SLICE_S = 0.05


def _now_ms() -> int:
    return int(time.time() * 1000)


class MintTransactionState(str, Enum):
    IDLE = "Idle"
    VALIDATING = "Validating"
    PUBLISHING_ASSET = "PublishingAsset"
    PUBLISHING_METADATA = "PublishingMetadata"
    ESTIMATING_COST = "EstimatingCost"
    SUBMITTING = "Submitting"
    CONFIRMING = "Confirming"
    RESOLVING_IDENTIFIER = "ResolvingIdentifier"
    COMPLETE = "Complete"
    FAILED = "Failed"


@dataclass(frozen=True)
class MintRequest:
    file: Optional[AssetFile]
    name: str = ""
    description: str = ""
    attributes: Optional[List[Json]] = None

    def resolved_name(self) -> str:
        n = (self.name or "").strip()
        if n:
            return n
        return self.file.stem.strip() if self.file is not None else ""

    def resolved_description(self) -> str:
        d = (self.description or "").strip()
        if d:
            return d
        n = self.resolved_name()
        return f"{n} - {DEFAULT_DESCRIPTION_SUFFIX}" if n else ""


@dataclass(frozen=True)
class MintResult:
    token_id: int
    transaction_hash: str
    content_uri: str
    image: AssetUploadResult
    metadata: AssetUploadResult
    block_number: int = 0
    gas_limit: int = 0
    gas_used: int = 0

    @property
    def degraded(self) -> bool:
        return self.image.degraded or self.metadata.degraded

    def to_json(self) -> Json:
        return {
            "token_id": self.token_id,
            "transaction_hash": self.transaction_hash,
            "content_uri": self.content_uri,
            "degraded": self.degraded,
            "image": self.image.to_json(),
            "metadata": self.metadata.to_json(),
            "block_number": self.block_number,
            "gas_limit": self.gas_limit,
            "gas_used": self.gas_used,
        }


@dataclass(frozen=True)
class StateTransition:
    previous: MintTransactionState
    current: MintTransactionState
    at_ms: int
    detail: Json = field(default_factory=dict)


Listener = Callable[[StateTransition], None]


class MintSession:
    """Per-user mint session: the ledger account in use plus pipeline bookkeeping.

    Holds the in-flight guard, the current state and its history, transition
    listeners, and the abort event that cancels superseded reads.
    """

    def __init__(self, client: Optional[LedgerClient] = None, *, clock: Callable[[], int] = _now_ms) -> None:
        self.client = client
        self.state = MintTransactionState.IDLE
        self.history: List[StateTransition] = []
        self._listeners: List[Listener] = []
        self._guard = threading.Lock()
        self._abort = threading.Event()
        self._clock = clock

    @property
    def in_flight(self) -> bool:
        return self._guard.locked()

    @property
    def abort_event(self) -> threading.Event:
        return self._abort

    def add_listener(self, fn: Listener) -> None:
        self._listeners.append(fn)

    def transition(self, new: MintTransactionState, **detail: Any) -> None:
        t = StateTransition(previous=self.state, current=new, at_ms=self._clock(), detail=dict(detail))
        self.state = new
        self.history.append(t)
        log_event(_log, "mint_state", previous=t.previous.value, current=t.current.value, **detail)
        for fn in list(self._listeners):
            fn(t)

    def switch_account(self, client: Optional[LedgerClient]) -> None:
        """Swap the active account. Reads still pending for the old one are aborted."""
        self._abort.set()
        self.client = client
        log_event(_log, "session_account_switched", address=getattr(client, "address", None))

    @contextmanager
    def flight(self) -> Iterator[threading.Event]:
        if not self._guard.acquire(blocking=False):
            raise MintInProgress("mint_already_in_flight", {"state": self.state.value})
        try:
            self._abort = threading.Event()
            self.history = []
            self.state = MintTransactionState.IDLE
            yield self._abort
        finally:
            self._guard.release()


def margined_gas_limit(estimate: int, margin_pct: int) -> int:
    """ceil(estimate * (100 + margin_pct) / 100), in integers."""
    return -(-int(estimate) * (100 + int(margin_pct)) // 100)


def issued_token_ids(receipt: TxReceipt, caller: str) -> List[int]:
    """Token ids the receipt issues to `caller`, from Transfer(0 -> caller) or Minted/ContentMinted."""
    caller = caller.lower()
    transfers: List[int] = []
    minted: List[int] = []
    for log in receipt.logs:
        a = log.args
        try:
            tid = int(a.get("token_id"))
        except (TypeError, ValueError):
            continue
        if log.event == "Transfer":
            if str(a.get("from") or "").lower() == ZERO_ADDRESS and str(a.get("to") or "").lower() == caller:
                transfers.append(tid)
        elif log.event in ("Minted", "ContentMinted"):
            who = str(a.get("owner") or a.get("minter") or "").lower()
            if who == caller:
                minted.append(tid)
    ids = transfers or minted
    return sorted(set(ids))


class MintOrchestrator:
    def __init__(
        self,
        publisher: ContentPublisher,
        session: MintSession,
        *,
        gas_margin_pct: int = 20,
        receipt_timeout_s: float = 120.0,
        read_timeout_s: float = 15.0,
        max_file_bytes: int = DEFAULT_MAX_FILE_BYTES,
        allowed_content_types: Sequence[str] = DEFAULT_ALLOWED_TYPES,
    ) -> None:
        self.publisher = publisher
        self.session = session
        self.gas_margin_pct = int(gas_margin_pct)
        self.receipt_timeout_s = float(receipt_timeout_s)
        self.read_timeout_s = float(read_timeout_s)
        self.max_file_bytes = int(max_file_bytes)
        self.allowed_content_types = frozenset(t.lower() for t in allowed_content_types)

    def mint(self, request: MintRequest) -> MintResult:
        with self.session.flight() as abort:
            try:
                return self._run(request, abort)
            except Exception as e:
                code = e.code if isinstance(e, MintError) else type(e).__name__
                self.session.transition(MintTransactionState.FAILED, error=code, reason=str(getattr(e, "reason", e)))
                raise

    # ------------------------------------------------------------------

    def _run(self, request: MintRequest, abort: threading.Event) -> MintResult:
        s = self.session

        s.transition(MintTransactionState.VALIDATING)
        client, file, name, description = self._validate(request)

        s.transition(MintTransactionState.PUBLISHING_ASSET, filename=file.filename, size=file.size)
        image = self.publisher.upload_asset(file)

        s.transition(MintTransactionState.PUBLISHING_METADATA, image_cid=image.content_identifier, degraded=image.degraded)
        document = self.publisher.build_metadata(image, file, name, description, request.attributes)
        self.publisher.check_bundle_integrity(image, document)
        metadata = self.publisher.upload_metadata(document, name=f"{file.stem or 'token'}-metadata.json")
        self.publisher.check_bundle_integrity(image, document, metadata)

        s.transition(MintTransactionState.ESTIMATING_COST, metadata_cid=metadata.content_identifier)
        cfg, _balance = self._preflight(client, abort)
        call = MintCall(
            name=name,
            description=description,
            content_hash=image.content_identifier,
            metadata_uri=metadata.protocol_uri,
        )
        estimate = client.estimate_mint(call, value=cfg.fee)
        gas_limit = margined_gas_limit(estimate, self.gas_margin_pct)
        log_event(_log, "mint_estimated", estimate=estimate, gas_limit=gas_limit, fee=cfg.fee)

        # Past this point the abort event is ignored: a broadcast cannot be recalled.
        s.transition(MintTransactionState.SUBMITTING, gas_limit=gas_limit, value=cfg.fee)
        tx_hash = client.send_mint(call, gas_limit=gas_limit, value=cfg.fee)

        s.transition(MintTransactionState.CONFIRMING, tx_hash=tx_hash)
        receipt = self._confirm(client, tx_hash)

        s.transition(MintTransactionState.RESOLVING_IDENTIFIER, block_number=receipt.block_number)
        token_id = self._resolve(client, receipt, image, expected=cfg.next_token_id)

        result = MintResult(
            token_id=token_id,
            transaction_hash=receipt.transaction_hash or tx_hash,
            content_uri=metadata.protocol_uri,
            image=image,
            metadata=metadata,
            block_number=receipt.block_number,
            gas_limit=gas_limit,
            gas_used=receipt.gas_used,
        )
        s.transition(MintTransactionState.COMPLETE, token_id=token_id, tx_hash=result.transaction_hash, degraded=result.degraded)
        return result

    def _validate(self, request: MintRequest) -> Tuple[LedgerClient, AssetFile, str, str]:
        file = request.file
        if file is None:
            raise ValidationError("missing_file")
        if not file.content:
            raise ValidationError("empty_file", {"filename": file.filename})
        if file.size > self.max_file_bytes:
            raise ValidationError("file_too_large", {"filename": file.filename, "size": file.size, "max_bytes": self.max_file_bytes})
        if file.media_type not in self.allowed_content_types:
            raise ValidationError("unsupported_file_type", {"filename": file.filename, "content_type": file.media_type})
        name = request.resolved_name()
        if not name:
            raise ValidationError("empty_name", {"filename": file.filename})
        description = request.resolved_description()
        if not description:
            raise ValidationError("empty_description")
        client = self.session.client
        if client is None:
            raise ValidationError("no_wallet_session")
        return client, file, name, description

    def _preflight(self, client: LedgerClient, abort: threading.Event) -> Tuple[RegistryConfig, int]:
        pool = ThreadPoolExecutor(max_workers=2, thread_name_prefix="mint-preflight")
        try:
            f_cfg: "Future[RegistryConfig]" = pool.submit(client.registry_config)
            f_bal: "Future[int]" = pool.submit(client.balance)
            deadline = time.monotonic() + self.read_timeout_s
            while True:
                if abort.is_set():
                    raise PreflightError("cancelled", {"stage": "preflight_reads"})
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise PreflightError("read_timeout", {"timeout_s": self.read_timeout_s})
                done, pending = wait((f_cfg, f_bal), timeout=min(_JOIN_SLICE_S, remaining), return_when=FIRST_EXCEPTION)
                if not pending or any(f.exception() is not None for f in done):
                    break
            for f in (f_cfg, f_bal):
                err = f.exception() if f.done() else None
                if isinstance(err, LedgerReadError):
                    raise PreflightError(err.reason, err.details, revert=err.revert) from err
                if err is not None:
                    raise err
            cfg = f_cfg.result()
            balance = f_bal.result()
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        log_event(_log, "mint_preflight", **cfg.to_json(), balance=balance)
        if not cfg.minting_enabled:
            raise PreflightError(RegistryErrorCode.MINTING_DISABLED.value, cfg.to_json(), revert=RegistryErrorCode.MINTING_DISABLED)
        if cfg.exhausted:
            raise PreflightError(RegistryErrorCode.SUPPLY_EXCEEDED.value, cfg.to_json(), revert=RegistryErrorCode.SUPPLY_EXCEEDED)
        if balance < cfg.fee:
            raise PreflightError("insufficient_balance", {"balance": balance, "fee": cfg.fee})
        return cfg, balance

    def _confirm(self, client: LedgerClient, tx_hash: str) -> TxReceipt:
        try:
            receipt = client.wait_for_receipt(tx_hash, timeout_s=self.receipt_timeout_s)
        except ReceiptTimeout as e:
            raise ExecutionError("confirmation_timeout", {"tx_hash": tx_hash, **(e.details or {})}) from e
        except LedgerReadError as e:
            raise ExecutionError(e.reason, {"tx_hash": tx_hash, **(e.details or {})}, revert=e.revert) from e
        if not receipt.succeeded:
            code = registry_error_code(receipt.revert_reason)
            raise ExecutionError(
                "included_but_execution_failed",
                {"tx_hash": tx_hash, "block_number": receipt.block_number, "revert_reason": receipt.revert_reason},
                revert=code,
            )
        return receipt

    def _resolve(self, client: LedgerClient, receipt: TxReceipt, image: AssetUploadResult, *, expected: int) -> int:
        caller = client.address.lower()
        ids = issued_token_ids(receipt, caller)
        if len(ids) == 1:
            token_id, source = ids[0], "event"
        else:
            try:
                token_id, source = client.next_token_id() - 1, "counter"
            except LedgerReadError as e:
                raise ResolutionError(e.reason, {"tx_hash": receipt.transaction_hash}, revert=e.revert) from e

        if token_id < 1:
            raise ResolutionError("no_token_issued", {"tx_hash": receipt.transaction_hash, "source": source})

        try:
            owner = client.owner_of(token_id).lower()
        except LedgerReadError as e:
            raise ResolutionError("ownership_check_failed", {"token_id": token_id, "source": source}, revert=e.revert) from e
        if owner != caller:
            raise ResolutionError("owner_mismatch", {"token_id": token_id, "owner": owner, "caller": caller, "source": source})

        try:
            record = client.token_record(token_id)
        except LedgerReadError as e:
            raise ResolutionError("record_read_failed", {"token_id": token_id}, revert=e.revert) from e
        want = protocol_uri(image.content_identifier)
        if record is not None and record.image_uri != want:
            raise IntegrityError("record_image_mismatch", {"token_id": token_id, "expected": want, "actual": record.image_uri})

        if token_id != expected:
            # Another caller's mint landed between preflight and inclusion.
            log_event(_log, "mint_token_id_drift", level=logging.WARNING, expected=expected, token_id=token_id)
        log_event(_log, "mint_resolved", token_id=token_id, source=source, owner=owner)
        return token_id
