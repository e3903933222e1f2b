# src/mintkit/ledger/registry.py
from __future__ import annotations

"""mintkit.ledger.registry

Issuance registry apply semantics.

The registry is a capped, ordered counter plus an ownership table and
per-token records. All state lives under state["registry"]; every mutating
call either completes or raises RegistryError, and the caller (the ledger
runtime) is responsible for discarding partial writes on error.

Key invariants:
  - next_token_id starts at 1, only ever increments, and is never reused
  - total_supply == next_token_id - 1
  - token records are write-once
  - a token's image_uri is ipfs://<content_hash> of the asset it was minted with
"""

from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from mintkit.ledger.errors import RegistryError, RegistryErrorCode
from mintkit.ledger.metadata import embedded_token_uri
from mintkit.util.cid import IPFS_SCHEME

Json = Dict[str, Any]

ZERO_ADDRESS = "0x" + "00" * 20

DEFAULT_FEE_WEI = 10**15  # 0.001 ether
DEFAULT_MAX_SUPPLY = 10_000

# Event names emitted into receipts.
EV_TRANSFER = "Transfer"
EV_MINTED = "Minted"
EV_CONTENT_MINTED = "ContentMinted"
EV_MINTING_TOGGLED = "MintingToggled"
EV_FEE_UPDATED = "FeeUpdated"
EV_WITHDRAWN = "Withdrawn"


@dataclass(frozen=True)
class CallContext:
    """Who is calling, with how much value, and when (ledger time)."""

    sender: str
    value: int = 0
    timestamp_ms: int = 0
    # Moves funds out of the registry account. Supplied by the ledger runtime.
    pay: Optional[Callable[[str, int], None]] = None


@dataclass
class RegistryEvent:
    name: str
    args: Json = field(default_factory=dict)

    def to_json(self) -> Json:
        return {"event": self.name, "args": dict(self.args)}


def _as_int(x: Any, default: int = 0) -> int:
    try:
        return int(x)
    except Exception:
        return default


def _as_str(x: Any) -> str:
    return x if isinstance(x, str) else ""


def _addr(x: Any) -> str:
    return _as_str(x).strip().lower()


def init_registry(
    state: Json,
    *,
    owner: str,
    name: str = "Web3Mint",
    symbol: str = "W3M",
    fee: int = DEFAULT_FEE_WEI,
    max_supply: int = DEFAULT_MAX_SUPPLY,
    minting_enabled: bool = True,
) -> Json:
    """Deploy a fresh registry into `state`. Refuses to overwrite an existing one."""
    if isinstance(state.get("registry"), dict):
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "already_deployed")
    if int(max_supply) <= 0:
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "max_supply_must_be_positive")
    if int(fee) < 0:
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "fee_must_be_non_negative")

    reg: Json = {
        "name": str(name),
        "symbol": str(symbol),
        "owner": _addr(owner),
        "fee": int(fee),
        "max_supply": int(max_supply),
        "minting_enabled": bool(minting_enabled),
        "next_token_id": 1,
        "owners": {},
        "balances": {},
        "token_uris": {},
        "records": {},
        "contract_balance": 0,
        "locked": False,
    }
    state["registry"] = reg
    return reg


def _reg(state: Json) -> Json:
    reg = state.get("registry")
    if not isinstance(reg, dict):
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "registry_not_deployed")
    return reg


def _require_owner(reg: Json, ctx: CallContext) -> None:
    if _addr(ctx.sender) != reg.get("owner"):
        raise RegistryError(RegistryErrorCode.UNAUTHORIZED, "owner_only", {"sender": _addr(ctx.sender)})


def _require_issuable(reg: Json) -> int:
    if not bool(reg.get("minting_enabled")):
        raise RegistryError(RegistryErrorCode.MINTING_DISABLED)
    token_id = _as_int(reg.get("next_token_id"), 1)
    if token_id > _as_int(reg.get("max_supply")):
        raise RegistryError(
            RegistryErrorCode.SUPPLY_EXCEEDED,
            details={"next_token_id": token_id, "max_supply": _as_int(reg.get("max_supply"))},
        )
    return token_id


def _require_payment(reg: Json, ctx: CallContext) -> None:
    fee = _as_int(reg.get("fee"))
    if int(ctx.value) < fee:
        raise RegistryError(RegistryErrorCode.INSUFFICIENT_PAYMENT, details={"fee": fee, "value": int(ctx.value)})


def _require_text(value: Any, code: RegistryErrorCode) -> str:
    s = _as_str(value)
    if not s.strip():
        raise RegistryError(code)
    return s


def _issue(reg: Json, to: str, token_id: int, uri: str) -> List[RegistryEvent]:
    key = str(token_id)
    owners = reg["owners"]
    if key in owners:
        # Unreachable while next_token_id only increments; kept as a hard stop.
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "token_already_issued", {"token_id": token_id})
    owners[key] = to
    reg["balances"][to] = _as_int(reg["balances"].get(to)) + 1
    reg["token_uris"][key] = uri
    reg["next_token_id"] = token_id + 1
    return [
        RegistryEvent(EV_TRANSFER, {"from": ZERO_ADDRESS, "to": to, "token_id": token_id}),
        RegistryEvent(EV_MINTED, {"token_id": token_id, "owner": to, "uri": uri}),
    ]


def _accept_value(reg: Json, ctx: CallContext) -> None:
    if int(ctx.value) > 0:
        reg["contract_balance"] = _as_int(reg.get("contract_balance")) + int(ctx.value)


def _issue_with_content(
    reg: Json,
    ctx: CallContext,
    to: str,
    name: Any,
    description: Any,
    content_hash: Any,
    metadata_uri: Any,
) -> List[RegistryEvent]:
    n = _require_text(name, RegistryErrorCode.EMPTY_NAME)
    d = _require_text(description, RegistryErrorCode.EMPTY_DESCRIPTION)
    h = _require_text(content_hash, RegistryErrorCode.INVALID_CONTENT_HASH).strip()
    token_id = _require_issuable(reg)

    image_uri = f"{IPFS_SCHEME}{h}"
    record: Json = {
        "name": n,
        "description": d,
        "image_uri": image_uri,
        "content_hash": h,
        "mint_timestamp": int(ctx.timestamp_ms),
        "minter_address": to,
    }

    prebuilt = _as_str(metadata_uri).strip()
    uri = prebuilt if prebuilt else embedded_token_uri(record)

    events = _issue(reg, to, token_id, uri)
    reg["records"][str(token_id)] = record
    events.append(RegistryEvent(EV_CONTENT_MINTED, {"token_id": token_id, "minter": to, "content_hash": h}))
    return events


# ---------------------------------------------------------------------------
# Mutating calls
# ---------------------------------------------------------------------------


def mint(state: Json, ctx: CallContext, uri: Any) -> List[RegistryEvent]:
    reg = _reg(state)
    token_id = _require_issuable(reg)
    _require_payment(reg, ctx)
    u = _require_text(uri, RegistryErrorCode.INVALID_URI)
    events = _issue(reg, _addr(ctx.sender), token_id, u)
    _accept_value(reg, ctx)
    return events


def mint_with_content(
    state: Json,
    ctx: CallContext,
    name: Any,
    description: Any,
    content_hash: Any,
    metadata_uri: Any = None,
) -> List[RegistryEvent]:
    reg = _reg(state)
    _require_issuable(reg)
    _require_payment(reg, ctx)
    events = _issue_with_content(reg, ctx, _addr(ctx.sender), name, description, content_hash, metadata_uri)
    _accept_value(reg, ctx)
    return events


def owner_issue(state: Json, ctx: CallContext, to: Any, uri: Any) -> List[RegistryEvent]:
    reg = _reg(state)
    _require_owner(reg, ctx)
    recipient = _addr(to)
    if not recipient:
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "missing_recipient")
    token_id = _require_issuable(reg)
    u = _require_text(uri, RegistryErrorCode.INVALID_URI)
    events = _issue(reg, recipient, token_id, u)
    _accept_value(reg, ctx)
    return events


def owner_issue_with_content(
    state: Json,
    ctx: CallContext,
    to: Any,
    name: Any,
    description: Any,
    content_hash: Any,
    metadata_uri: Any = None,
) -> List[RegistryEvent]:
    reg = _reg(state)
    _require_owner(reg, ctx)
    recipient = _addr(to)
    if not recipient:
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "missing_recipient")
    events = _issue_with_content(reg, ctx, recipient, name, description, content_hash, metadata_uri)
    _accept_value(reg, ctx)
    return events


def toggle_minting(state: Json, ctx: CallContext, enabled: Any) -> List[RegistryEvent]:
    reg = _reg(state)
    _require_owner(reg, ctx)
    reg["minting_enabled"] = bool(enabled)
    return [RegistryEvent(EV_MINTING_TOGGLED, {"enabled": bool(enabled)})]


def update_fee(state: Json, ctx: CallContext, new_fee: Any) -> List[RegistryEvent]:
    reg = _reg(state)
    _require_owner(reg, ctx)
    fee = _as_int(new_fee, -1)
    if fee < 0:
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "fee_must_be_non_negative", {"fee": new_fee})
    reg["fee"] = fee
    return [RegistryEvent(EV_FEE_UPDATED, {"fee": fee})]


def withdraw(state: Json, ctx: CallContext) -> List[RegistryEvent]:
    reg = _reg(state)
    _require_owner(reg, ctx)
    if bool(reg.get("locked")):
        raise RegistryError(RegistryErrorCode.REENTRANCY)
    amount = _as_int(reg.get("contract_balance"))
    if amount <= 0:
        raise RegistryError(RegistryErrorCode.NO_BALANCE)
    if ctx.pay is None:
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "no_payout_channel")

    reg["locked"] = True
    try:
        # Balance is cleared before funds leave, so a re-entrant payout sees zero.
        reg["contract_balance"] = 0
        ctx.pay(reg["owner"], amount)
    finally:
        reg["locked"] = False
    return [RegistryEvent(EV_WITHDRAWN, {"to": reg["owner"], "amount": amount})]


MUTATING_CALLS: Dict[str, Callable[..., List[RegistryEvent]]] = {
    "mint": mint,
    "mint_with_content": mint_with_content,
    "owner_issue": owner_issue,
    "owner_issue_with_content": owner_issue_with_content,
    "toggle_minting": toggle_minting,
    "update_fee": update_fee,
    "withdraw": withdraw,
}

PAYABLE_CALLS = frozenset({"mint", "mint_with_content", "owner_issue", "owner_issue_with_content"})


def apply_registry_call(state: Json, ctx: CallContext, method: str, args: Optional[List[Any]] = None) -> List[RegistryEvent]:
    fn = MUTATING_CALLS.get(str(method))
    if fn is None:
        raise RegistryError(RegistryErrorCode.UNKNOWN_METHOD, str(method))
    if int(ctx.value) > 0 and method not in PAYABLE_CALLS:
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "non_payable", {"method": method})
    try:
        return fn(state, ctx, *(args or []))
    except TypeError as e:
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "bad_arguments", {"method": method, "error": str(e)}) from e


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------


def _existing_owner(reg: Json, token_id: Any) -> str:
    owner = reg["owners"].get(str(_as_int(token_id, -1)))
    if not owner:
        raise RegistryError(RegistryErrorCode.NONEXISTENT_TOKEN, details={"token_id": token_id})
    return owner


def owner_of(state: Json, token_id: Any) -> str:
    return _existing_owner(_reg(state), token_id)


def token_uri(state: Json, token_id: Any) -> str:
    reg = _reg(state)
    _existing_owner(reg, token_id)
    return str(reg["token_uris"].get(str(_as_int(token_id))) or "")


def token_record(state: Json, token_id: Any) -> Json:
    """Structured record for content mints; plain mints have no record."""
    reg = _reg(state)
    _existing_owner(reg, token_id)
    rec = reg["records"].get(str(_as_int(token_id)))
    return dict(rec) if isinstance(rec, dict) else {}


def balance_of(state: Json, address: Any) -> int:
    return _as_int(_reg(state)["balances"].get(_addr(address)))


def total_supply(state: Json) -> int:
    return _as_int(_reg(state).get("next_token_id"), 1) - 1


def registry_config(state: Json) -> Json:
    reg = _reg(state)
    return {
        "fee": _as_int(reg.get("fee")),
        "max_supply": _as_int(reg.get("max_supply")),
        "minting_enabled": bool(reg.get("minting_enabled")),
        "next_token_id": _as_int(reg.get("next_token_id"), 1),
    }


READ_CALLS: Dict[str, Callable[..., Any]] = {
    "fee": lambda state: _as_int(_reg(state).get("fee")),
    "max_supply": lambda state: _as_int(_reg(state).get("max_supply")),
    "minting_enabled": lambda state: bool(_reg(state).get("minting_enabled")),
    "next_token_id": lambda state: _as_int(_reg(state).get("next_token_id"), 1),
    "total_supply": total_supply,
    "owner": lambda state: str(_reg(state).get("owner") or ""),
    "name": lambda state: str(_reg(state).get("name") or ""),
    "symbol": lambda state: str(_reg(state).get("symbol") or ""),
    "contract_balance": lambda state: _as_int(_reg(state).get("contract_balance")),
    "registry_config": registry_config,
    "owner_of": owner_of,
    "token_uri": token_uri,
    "token_record": token_record,
    "balance_of": balance_of,
}


def read_registry(state: Json, method: str, args: Optional[List[Any]] = None) -> Any:
    fn = READ_CALLS.get(str(method))
    if fn is None:
        raise RegistryError(RegistryErrorCode.UNKNOWN_METHOD, str(method))
    try:
        return fn(state, *(args or []))
    except TypeError as e:
        raise RegistryError(RegistryErrorCode.INVALID_ARGUMENT, "bad_arguments", {"method": method, "error": str(e)}) from e
