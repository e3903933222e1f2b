# src/mintkit/client/evm.py
from __future__ import annotations

"""LedgerClient for an EVM JSON-RPC node (web3.py).

Targets the deployed registry ABI below (camelCase names of the Solidity
build). Two signing modes:
  - local key:  build_transaction -> sign_transaction -> send_raw_transaction
  - node-managed account (wallet provider): functions.X(...).transact()

Revert data is classified by 4-byte custom-error selector through an explicit
table; provider error code 4001 is the user rejecting the signature prompt.
"""

import logging
from typing import Any, Dict, List, Optional

from web3 import Web3
from web3.exceptions import ContractLogicError, TimeExhausted, Web3Exception
from web3.logs import DISCARD

from mintkit.client.base import LedgerReadError, ReceiptTimeout
from mintkit.errors import EstimationError, SubmissionError, SubmissionFailure
from mintkit.ledger.errors import RegistryErrorCode, registry_error_code
from mintkit.ledger.types import LogEntry, MintCall, RegistryConfig, TokenRecord, TxReceipt
from mintkit.util.structured_logging import log_event

Json = Dict[str, Any]

_log = logging.getLogger("mintkit.client.evm")

USER_REJECTED_CODE = 4001

REGISTRY_ERROR_NAMES = (
    "MintingDisabled",
    "MaxSupplyExceeded",
    "InsufficientPayment",
    "InvalidTokenURI",
    "InvalidIPFSHash",
    "EmptyName",
    "EmptyDescription",
    "NoBalance",
)


def _fn(name: str, inputs: List[Json], outputs: List[Json], mutability: str = "view") -> Json:
    return {"type": "function", "name": name, "inputs": inputs, "outputs": outputs, "stateMutability": mutability}


def _arg(name: str, typ: str, indexed: Optional[bool] = None) -> Json:
    out: Json = {"name": name, "type": typ}
    if indexed is not None:
        out["indexed"] = indexed
    return out


REGISTRY_ABI: List[Json] = [
    _fn("mintPrice", [], [_arg("", "uint256")]),
    _fn("MAX_SUPPLY", [], [_arg("", "uint256")]),
    _fn("mintingEnabled", [], [_arg("", "bool")]),
    _fn("getCurrentTokenId", [], [_arg("", "uint256")]),
    _fn("totalSupply", [], [_arg("", "uint256")]),
    _fn("ownerOf", [_arg("tokenId", "uint256")], [_arg("", "address")]),
    _fn("tokenURI", [_arg("tokenId", "uint256")], [_arg("", "string")]),
    _fn(
        "getNFTInfo",
        [_arg("tokenId", "uint256")],
        [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    _arg("name", "string"),
                    _arg("description", "string"),
                    _arg("imageURI", "string"),
                    _arg("mintTimestamp", "uint256"),
                    _arg("minter", "address"),
                ],
            }
        ],
    ),
    _fn(
        "mintIpfsNFTWithMetadata",
        [_arg("name", "string"), _arg("description", "string"), _arg("ipfsHash", "string"), _arg("metadataURI", "string")],
        [],
        "payable",
    ),
    {
        "type": "event",
        "name": "Transfer",
        "anonymous": False,
        "inputs": [_arg("from", "address", True), _arg("to", "address", True), _arg("tokenId", "uint256", True)],
    },
    {
        "type": "event",
        "name": "IPFSNFTMinted",
        "anonymous": False,
        "inputs": [_arg("tokenId", "uint256", True), _arg("minter", "address", True), _arg("ipfsHash", "string", False)],
    },
] + [{"type": "error", "name": n, "inputs": []} for n in REGISTRY_ERROR_NAMES]


def _selector(signature: str) -> str:
    return Web3.keccak(text=signature)[:4].hex().removeprefix("0x").lower()


ERROR_SELECTORS: Dict[str, RegistryErrorCode] = {}
for _name in REGISTRY_ERROR_NAMES:
    _code = registry_error_code(_name)
    if _code is not None:
        ERROR_SELECTORS[_selector(f"{_name}()")] = _code
# OpenZeppelin errors carry arguments; the selector still identifies them.
ERROR_SELECTORS[_selector("OwnableUnauthorizedAccount(address)")] = RegistryErrorCode.UNAUTHORIZED
ERROR_SELECTORS[_selector("ERC721NonexistentToken(uint256)")] = RegistryErrorCode.NONEXISTENT_TOKEN


def classify_revert(e: ContractLogicError) -> Optional[RegistryErrorCode]:
    """Selector lookup on the revert payload, then an exact-name lookup on the message."""
    data = getattr(e, "data", None)
    if isinstance(data, (bytes, bytearray)):
        data = data.hex()
    if isinstance(data, str):
        sel = data.lower().removeprefix("0x")[:8]
        if sel in ERROR_SELECTORS:
            return ERROR_SELECTORS[sel]
    msg = str(getattr(e, "message", None) or e)
    tail = msg.rsplit(":", 1)[-1].strip()
    return registry_error_code(tail)


def rpc_error_code(e: Exception) -> Optional[int]:
    """Provider error code from a JSON-RPC failure, if one was attached."""
    resp = getattr(e, "rpc_response", None)
    if isinstance(resp, dict):
        err = resp.get("error")
        if isinstance(err, dict) and isinstance(err.get("code"), int):
            return int(err["code"])
    for a in getattr(e, "args", ()):
        if isinstance(a, dict) and isinstance(a.get("code"), int):
            return int(a["code"])
    code = getattr(e, "code", None)
    return int(code) if isinstance(code, int) else None


class Web3LedgerClient:
    def __init__(
        self,
        w3: Web3,
        contract_address: str,
        *,
        private_key: Optional[str] = None,
        sender: Optional[str] = None,
        abi: Optional[List[Json]] = None,
    ) -> None:
        self.w3 = w3
        self.contract = w3.eth.contract(address=Web3.to_checksum_address(contract_address), abi=abi or REGISTRY_ABI)
        self._account = w3.eth.account.from_key(private_key) if private_key else None
        if self._account is not None:
            self._address = self._account.address
        elif sender:
            self._address = Web3.to_checksum_address(sender)
        else:
            raise ValueError("either private_key or sender is required")

    @classmethod
    def from_rpc_url(cls, rpc_url: str, contract_address: str, *, timeout_s: float = 15.0, **kw: Any) -> "Web3LedgerClient":
        w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout_s}))
        return cls(w3, contract_address, **kw)

    @property
    def address(self) -> str:
        return str(self._address).lower()

    def _read(self, fn_name: str, *args: Any) -> Any:
        try:
            return getattr(self.contract.functions, fn_name)(*args).call()
        except ContractLogicError as e:
            raise LedgerReadError(f"read_{fn_name}_failed", classify_revert(e), {"args": list(args)}) from e
        except (OSError, ValueError, Web3Exception) as e:
            raise LedgerReadError(f"read_{fn_name}_failed", None, {"error": str(e)}) from e

    def registry_config(self) -> RegistryConfig:
        return RegistryConfig(
            fee=int(self._read("mintPrice")),
            max_supply=int(self._read("MAX_SUPPLY")),
            minting_enabled=bool(self._read("mintingEnabled")),
            next_token_id=int(self._read("getCurrentTokenId")),
        )

    def balance(self) -> int:
        try:
            return int(self.w3.eth.get_balance(self._address))
        except (OSError, ValueError, Web3Exception) as e:
            raise LedgerReadError("read_balance_failed", None, {"error": str(e)}) from e

    def next_token_id(self) -> int:
        return int(self._read("getCurrentTokenId"))

    def owner_of(self, token_id: int) -> str:
        return str(self._read("ownerOf", int(token_id))).lower()

    def token_record(self, token_id: int) -> Optional[TokenRecord]:
        name, description, image_uri, ts, minter = self._read("getNFTInfo", int(token_id))
        if not image_uri:
            return None
        content_hash = image_uri[len("ipfs://"):] if image_uri.startswith("ipfs://") else ""
        return TokenRecord(
            token_id=int(token_id),
            name=name,
            description=description,
            image_uri=image_uri,
            # Solidity block timestamps are seconds.
            mint_timestamp=int(ts) * 1000,
            minter_address=str(minter).lower(),
            content_hash=content_hash,
        )

    def _mint_fn(self, call: MintCall) -> Any:
        return self.contract.functions.mintIpfsNFTWithMetadata(call.name, call.description, call.content_hash, call.metadata_uri)

    def estimate_mint(self, call: MintCall, *, value: int) -> int:
        try:
            gas = int(self._mint_fn(call).estimate_gas({"from": self._address, "value": int(value)}))
        except ContractLogicError as e:
            code = classify_revert(e)
            reason = code.value if code is not None else str(getattr(e, "message", None) or e)
            raise EstimationError(reason, {"data": str(getattr(e, "data", "") or "")}, revert=code) from e
        except (OSError, ValueError, Web3Exception) as e:
            raise EstimationError(str(e), {"transport": True}) from e
        log_event(_log, "estimate", method="mintIpfsNFTWithMetadata", gas=gas)
        return gas

    def send_mint(self, call: MintCall, *, gas_limit: int, value: int) -> str:
        params: Json = {"from": self._address, "value": int(value), "gas": int(gas_limit)}
        try:
            if self._account is not None:
                params["nonce"] = self.w3.eth.get_transaction_count(self._address, "pending")
                params["chainId"] = self.w3.eth.chain_id
                tx = self._mint_fn(call).build_transaction(params)
                signed = self._account.sign_transaction(tx)
                tx_hash = self.w3.eth.send_raw_transaction(signed.raw_transaction)
            else:
                tx_hash = self._mint_fn(call).transact(params)
        except ContractLogicError as e:
            raise SubmissionError(str(e), {"method": "mintIpfsNFTWithMetadata"}, revert=classify_revert(e), kind=SubmissionFailure.TRANSPORT) from e
        except (OSError, ValueError, Web3Exception) as e:
            if rpc_error_code(e) == USER_REJECTED_CODE:
                raise SubmissionError("user_declined", {"code": USER_REJECTED_CODE}, kind=SubmissionFailure.USER_DECLINED) from e
            raise SubmissionError(str(e), {"code": rpc_error_code(e)}, kind=SubmissionFailure.TRANSPORT) from e
        h = Web3.to_hex(tx_hash)
        log_event(_log, "tx_submitted", tx_hash=h, gas_limit=gas_limit, value=value)
        return h

    def _decode_logs(self, receipt: Any) -> List[LogEntry]:
        out: List[LogEntry] = []
        for ev_name in ("Transfer", "IPFSNFTMinted"):
            event = getattr(self.contract.events, ev_name)()
            for ev in event.process_receipt(receipt, errors=DISCARD):
                args = {k: (str(v).lower() if isinstance(v, str) else v) for k, v in dict(ev["args"]).items()}
                if ev_name == "Transfer":
                    out.append(LogEntry("Transfer", {"from": args.get("from"), "to": args.get("to"), "token_id": int(args.get("tokenId", 0))}))
                else:
                    out.append(LogEntry("ContentMinted", {"token_id": int(args.get("tokenId", 0)), "minter": args.get("minter"), "content_hash": ev["args"].get("ipfsHash")}))
        return out

    def _replay_revert(self, tx_hash: str, receipt: Any) -> Optional[str]:
        """Re-run a failed tx at its block to recover the revert reason."""
        try:
            tx = self.w3.eth.get_transaction(tx_hash)
            call = {"from": tx["from"], "to": tx["to"], "data": tx["input"], "value": tx["value"], "gas": tx["gas"]}
            self.w3.eth.call(call, block_identifier=receipt["blockNumber"])
        except ContractLogicError as e:
            code = classify_revert(e)
            return code.value if code is not None else str(getattr(e, "message", None) or e)
        except (OSError, ValueError, Web3Exception) as e:
            log_event(_log, "revert_replay_failed", level=logging.WARNING, tx_hash=tx_hash, error=str(e))
        return None

    def wait_for_receipt(self, tx_hash: str, *, timeout_s: float) -> TxReceipt:
        try:
            r = self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout_s)
        except TimeExhausted as e:
            raise ReceiptTimeout("receipt_timeout", None, {"tx_hash": tx_hash, "timeout_s": timeout_s}) from e
        except (OSError, ValueError, Web3Exception) as e:
            raise LedgerReadError("receipt_read_failed", None, {"tx_hash": tx_hash, "error": str(e)}) from e
        status = int(r["status"])
        revert = self._replay_revert(tx_hash, r) if status == 0 else None
        try:
            logs = self._decode_logs(r) if status == 1 else []
        except (KeyError, TypeError, ValueError, Web3Exception) as e:
            raise LedgerReadError("receipt_read_failed", None, {"tx_hash": tx_hash, "error": f"log_decode: {e}"}) from e
        return TxReceipt(
            transaction_hash=Web3.to_hex(r["transactionHash"]),
            status=status,
            block_number=int(r["blockNumber"]),
            gas_used=int(r["gasUsed"]),
            logs=logs,
            revert_reason=revert,
        )
