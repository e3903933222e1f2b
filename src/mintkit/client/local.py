from __future__ import annotations

import logging
from typing import Any, List, Optional

from mintkit.crypto.sig import SignatureDeclined, Wallet
from mintkit.errors import EstimationError, SubmissionError, SubmissionFailure
from mintkit.client.base import LedgerReadError, ReceiptTimeout
from mintkit.ledger.errors import RegistryError, registry_error_code
from mintkit.ledger.types import LogEntry, MintCall, RegistryConfig, TokenRecord, TxReceipt
from mintkit.runtime.chain import LocalChain
from mintkit.runtime.errors import ChainRejected
from mintkit.util.structured_logging import log_event

_log = logging.getLogger("mintkit.client.local")

MINT_METHOD = "mint_with_content"


def receipt_from_json(obj: dict) -> TxReceipt:
    return TxReceipt(
        transaction_hash=str(obj.get("transaction_hash") or ""),
        status=int(obj.get("status") or 0),
        block_number=int(obj.get("block_number") or 0),
        gas_used=int(obj.get("gas_used") or 0),
        logs=[LogEntry(str(l.get("event") or ""), dict(l.get("args") or {})) for l in (obj.get("logs") or [])],
        revert_reason=obj.get("revert_reason"),
    )


class LocalLedgerClient:
    """LedgerClient over an in-process LocalChain, signing with a Wallet."""

    def __init__(self, chain: LocalChain, wallet: Wallet) -> None:
        self.chain = chain
        self.wallet = wallet

    @property
    def address(self) -> str:
        return self.wallet.address

    def _read(self, method: str, args: Optional[List[Any]] = None) -> Any:
        try:
            return self.chain.call(method, args)
        except RegistryError as e:
            raise LedgerReadError(f"read_{method}_failed", e.code, {"args": list(args or [])}) from e

    def registry_config(self) -> RegistryConfig:
        return RegistryConfig.from_json(self._read("registry_config"))

    def balance(self) -> int:
        return self.chain.get_balance(self.address)

    def next_token_id(self) -> int:
        return int(self._read("next_token_id"))

    def owner_of(self, token_id: int) -> str:
        return str(self._read("owner_of", [int(token_id)]))

    def token_record(self, token_id: int) -> Optional[TokenRecord]:
        rec = self._read("token_record", [int(token_id)])
        return TokenRecord.from_json(int(token_id), rec) if rec else None

    def estimate_mint(self, call: MintCall, *, value: int) -> int:
        return self.estimate(MINT_METHOD, call.args(), value=value)

    def estimate(self, method: str, args: List[Any], *, value: int = 0) -> int:
        try:
            return self.chain.estimate(sender=self.address, method=method, args=args, value=value)
        except RegistryError as e:
            raise EstimationError(e.code.value, {"method": method, **(e.details or {})}, revert=e.code) from e

    def send_mint(self, call: MintCall, *, gas_limit: int, value: int) -> str:
        return self.transact(MINT_METHOD, call.args(), gas_limit=gas_limit, value=value)

    def transact(self, method: str, args: List[Any], *, gas_limit: int, value: int = 0) -> str:
        nonce = self.chain.get_nonce(self.address)
        try:
            tx = self.wallet.sign_tx(
                chain_id=self.chain.chain_id,
                nonce=nonce,
                method=method,
                args=args,
                value=value,
                gas_limit=gas_limit,
            )
        except SignatureDeclined as e:
            raise SubmissionError("user_declined", {"method": method}, kind=SubmissionFailure.USER_DECLINED) from e
        try:
            tx_hash = self.chain.send_transaction(tx)
        except ChainRejected as e:
            raise SubmissionError(e.reason, {"code": e.code, "details": e.details}, kind=SubmissionFailure.TRANSPORT) from e
        log_event(_log, "tx_submitted", tx_hash=tx_hash, method=method, nonce=nonce, gas_limit=gas_limit, value=value)
        return tx_hash

    def wait_for_receipt(self, tx_hash: str, *, timeout_s: float) -> TxReceipt:
        try:
            obj = self.chain.wait_for_receipt(tx_hash, timeout_s=timeout_s)
        except TimeoutError as e:
            raise ReceiptTimeout("receipt_timeout", None, {"tx_hash": tx_hash, "timeout_s": timeout_s}) from e
        r = receipt_from_json(obj)
        if not r.succeeded and r.revert_reason:
            log_event(
                _log,
                "tx_reverted",
                level=logging.WARNING,
                tx_hash=tx_hash,
                revert=r.revert_reason,
                classified=registry_error_code(r.revert_reason) is not None,
            )
        return r
