# src/mintkit/runtime/chain.py
from __future__ import annotations

"""In-process devnet ledger hosting the issuance registry.

Execution model:
  - one writer lock: transactions execute one at a time, in arrival order,
    and each one is its own block (block_number increments per tx)
  - every admitted transaction is included; a revert or out-of-gas run yields
    a status-0 receipt, charges gas, refunds value and discards registry writes
  - estimate() is a dry run on a copy and never touches live state

Gas:
  intrinsic 21000 + 16 per calldata byte, plus a fixed per-method cost, plus
  STORAGE_BYTE_GAS for every byte the call adds to registry storage.
"""

import copy
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from mintkit.crypto.sig import address_from_pubkey, canonical_tx_message, verify_ed25519_signature
from mintkit.ledger.errors import RegistryError
from mintkit.ledger.registry import CallContext, RegistryEvent, apply_registry_call, init_registry, read_registry
from mintkit.runtime.errors import ChainRejected
from mintkit.runtime.sqlite_db import SqliteChainStore
from mintkit.runtime.tx import TxEnvelope, compute_tx_hash
from mintkit.util.canon import canon_json
from mintkit.util.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("mintkit.runtime.chain")

INTRINSIC_GAS = 21_000
CALLDATA_BYTE_GAS = 16
STORAGE_BYTE_GAS = 20
DEFAULT_GAS_PRICE = 1_000_000_000  # 1 gwei

METHOD_GAS: Dict[str, int] = {
    "mint": 50_000,
    "mint_with_content": 80_000,
    "owner_issue": 45_000,
    "owner_issue_with_content": 70_000,
    "toggle_minting": 8_000,
    "update_fee": 8_000,
    "withdraw": 12_000,
}

REGISTRY_ADDRESS = "0x" + "5a" * 20


def _now_ms() -> int:
    return int(time.time() * 1000)


def intrinsic_gas(env: TxEnvelope) -> int:
    return INTRINSIC_GAS + CALLDATA_BYTE_GAS * len(env.calldata())


class OutOfGas(Exception):
    pass


class LocalChain:
    def __init__(
        self,
        *,
        chain_id: int = 31337,
        gas_price: int = DEFAULT_GAS_PRICE,
        store: Optional[SqliteChainStore] = None,
        clock: Callable[[], int] = _now_ms,
    ) -> None:
        self.chain_id = int(chain_id)
        self.gas_price = int(gas_price)
        self._store = store
        self._clock = clock
        self._lock = threading.RLock()
        self._receipt_cv = threading.Condition(self._lock)
        self._receipts: Dict[str, Json] = {}

        if store is not None and store.exists():
            self.state: Json = store.read()
            for r in store.receipts():
                self._receipts[str(r["transaction_hash"])] = r
        else:
            self.state = {
                "chain_id": self.chain_id,
                "block_number": 0,
                "accounts": {},
                "registry_address": REGISTRY_ADDRESS,
            }

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def _account(self, state: Json, address: str) -> Json:
        accounts = state.setdefault("accounts", {})
        addr = str(address).lower()
        acct = accounts.get(addr)
        if not isinstance(acct, dict):
            acct = {"balance": 0, "nonce": 0, "pubkey": ""}
            accounts[addr] = acct
        return acct

    @staticmethod
    def _peek_account(state: Json, address: str) -> Json:
        """Account view that never inserts into `state`."""
        acct = (state.get("accounts") or {}).get(str(address).lower())
        if isinstance(acct, dict):
            return acct
        return {"balance": 0, "nonce": 0, "pubkey": ""}

    def _persist(self, state: Json, receipt: Optional[Json] = None) -> None:
        if self._store is None:
            return
        if receipt is None:
            self._store.write(state)
        else:
            self._store.commit(state, receipt)

    def fund(self, address: str, amount: int) -> int:
        """Devnet faucet. Returns the new balance."""
        if int(amount) < 0:
            raise ValueError("amount must be non-negative")
        with self._lock:
            nxt = copy.deepcopy(self.state)
            acct = self._account(nxt, address)
            acct["balance"] = int(acct["balance"]) + int(amount)
            self._persist(nxt)
            self.state = nxt
            return int(acct["balance"])

    def get_balance(self, address: str) -> int:
        with self._lock:
            acct = self.state.get("accounts", {}).get(str(address).lower())
            return int(acct["balance"]) if isinstance(acct, dict) else 0

    def get_nonce(self, address: str) -> int:
        with self._lock:
            acct = self.state.get("accounts", {}).get(str(address).lower())
            return int(acct["nonce"]) if isinstance(acct, dict) else 0

    @property
    def block_number(self) -> int:
        with self._lock:
            return int(self.state.get("block_number", 0))

    @property
    def registry_address(self) -> str:
        return str(self.state.get("registry_address") or REGISTRY_ADDRESS)

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def deploy_registry(self, *, owner: str, **params: Any) -> str:
        with self._lock:
            nxt = copy.deepcopy(self.state)
            init_registry(nxt, owner=owner, **params)
            self._persist(nxt)
            self.state = nxt
        log_event(_log, "registry_deployed", owner=str(owner).lower(), address=self.registry_address)
        return self.registry_address

    @property
    def deployed(self) -> bool:
        with self._lock:
            return isinstance(self.state.get("registry"), dict)

    def call(self, method: str, args: Optional[List[Any]] = None) -> Any:
        """Read-only registry call against the latest state."""
        with self._lock:
            return copy.deepcopy(read_registry(self.state, method, args))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _execute(self, state: Json, env: TxEnvelope, timestamp_ms: int) -> Tuple[List[RegistryEvent], int]:
        """Run `env` against `state` (mutated in place). Returns (events, gas_used).

        Raises RegistryError on revert, OutOfGas when the ceiling is crossed.
        """
        sender = self._account(state, env.sender)
        if env.value > 0:
            sender["balance"] = int(sender["balance"]) - int(env.value)

        def pay(to: str, amount: int) -> None:
            acct = self._account(state, to)
            acct["balance"] = int(acct["balance"]) + int(amount)

        reg_before = len(canon_json(state.get("registry") or {}))
        ctx = CallContext(sender=env.sender, value=int(env.value), timestamp_ms=int(timestamp_ms), pay=pay)
        events = apply_registry_call(state, ctx, env.method, env.args)
        grown = max(0, len(canon_json(state.get("registry") or {})) - reg_before)

        gas = intrinsic_gas(env) + METHOD_GAS.get(env.method, 0) + STORAGE_BYTE_GAS * grown
        if env.gas_limit and gas > env.gas_limit:
            raise OutOfGas(gas)
        return events, gas

    def estimate(self, *, sender: str, method: str, args: Optional[List[Any]] = None, value: int = 0) -> int:
        """Dry-run gas estimate. Raises RegistryError exactly as execution would."""
        env = TxEnvelope(
            chain_id=self.chain_id,
            sender=str(sender).lower(),
            pubkey="",
            nonce=0,
            method=str(method),
            args=list(args or []),
            value=int(value),
            gas_limit=0,
        )
        with self._lock:
            scratch = copy.deepcopy(self.state)
            ts = self._clock()
        _, gas = self._execute(scratch, env, ts)
        log_event(_log, "estimate", method=method, sender=env.sender, gas=gas)
        return gas

    def _admit(self, env: TxEnvelope) -> None:
        if env.chain_id != self.chain_id:
            raise ChainRejected("invalid_tx", "wrong_chain_id", {"want": self.chain_id, "got": env.chain_id})
        if not env.pubkey or address_from_pubkey(env.pubkey) != env.sender:
            raise ChainRejected("invalid_tx", "sender_pubkey_mismatch", {"sender": env.sender})
        msg = canonical_tx_message(
            chain_id=env.chain_id,
            sender=env.sender,
            nonce=env.nonce,
            method=env.method,
            args=env.args,
            value=env.value,
            gas_limit=env.gas_limit,
        )
        if not verify_ed25519_signature(message=msg, sig=env.sig, pubkey=env.pubkey):
            raise ChainRejected("invalid_tx", "bad_signature", {"sender": env.sender})

        acct = self._peek_account(self.state, env.sender)
        if int(env.nonce) != int(acct["nonce"]):
            raise ChainRejected("invalid_tx", "bad_nonce", {"want": int(acct["nonce"]), "got": env.nonce})
        floor = intrinsic_gas(env)
        if env.gas_limit < floor:
            raise ChainRejected("invalid_tx", "intrinsic_gas_too_low", {"gas_limit": env.gas_limit, "floor": floor})
        cost = int(env.value) + int(env.gas_limit) * self.gas_price
        if int(acct["balance"]) < cost:
            raise ChainRejected("insufficient_funds", "balance_below_value_plus_gas", {"balance": int(acct["balance"]), "cost": cost})

    def send_transaction(self, tx: Any) -> str:
        """Admit, execute and include a signed transaction. Returns its hash."""
        env = TxEnvelope.from_json(tx)
        tx_hash = compute_tx_hash(env)

        with self._lock:
            if tx_hash in self._receipts:
                raise ChainRejected("invalid_tx", "duplicate_tx", {"tx_hash": tx_hash})
            self._admit(env)

            ts = self._clock()
            block_number = int(self.state.get("block_number", 0)) + 1
            working = copy.deepcopy(self.state)
            status = 1
            revert: Optional[str] = None
            events: List[RegistryEvent] = []
            try:
                events, gas_used = self._execute(working, env, ts)
            except RegistryError as e:
                status, revert = 0, e.code.value
                gas_used = min(env.gas_limit, intrinsic_gas(env) + METHOD_GAS.get(env.method, 0))
            except OutOfGas:
                status, revert = 0, "OutOfGas"
                gas_used = env.gas_limit

            nxt = working if status == 1 else copy.deepcopy(self.state)
            # Nonce and gas are charged whether or not execution succeeded.
            acct = self._account(nxt, env.sender)
            acct["nonce"] = int(acct["nonce"]) + 1
            acct["pubkey"] = env.pubkey
            acct["balance"] = int(acct["balance"]) - gas_used * self.gas_price
            nxt["block_number"] = block_number

            receipt: Json = {
                "transaction_hash": tx_hash,
                "status": status,
                "block_number": block_number,
                "gas_used": gas_used,
                "timestamp_ms": ts,
                "logs": [ev.to_json() for ev in events] if status == 1 else [],
                "revert_reason": revert,
            }
            # Disk first: a failed commit leaves the in-memory ledger untouched.
            self._persist(nxt, receipt)
            self.state = nxt
            self._receipts[tx_hash] = receipt
            self._receipt_cv.notify_all()

        log_event(
            _log,
            "tx_included",
            tx_hash=tx_hash,
            method=env.method,
            status=status,
            block_number=block_number,
            gas_used=gas_used,
            revert_reason=revert,
        )
        return tx_hash

    def get_receipt(self, tx_hash: str) -> Optional[Json]:
        with self._lock:
            r = self._receipts.get(str(tx_hash))
            return copy.deepcopy(r) if r is not None else None

    def wait_for_receipt(self, tx_hash: str, timeout_s: float = 120.0) -> Json:
        deadline = time.monotonic() + float(timeout_s)
        with self._receipt_cv:
            while str(tx_hash) not in self._receipts:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    raise TimeoutError(f"no receipt for {tx_hash} within {timeout_s}s")
                self._receipt_cv.wait(remaining)
            return copy.deepcopy(self._receipts[str(tx_hash)])

