"""
💧 Delta extraction
Turns one getTransaction record into a FEE candidate for a watched vault,
or None. Native vaults are read from pre/postBalances by account index,
token vaults from pre/postTokenBalances by owner.
"""

import enum
import logging
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from pf_ledger import EventType, FeeCandidate, VaultType

log = logging.getLogger("fee-delta")

WSOL_MINT = "So11111111111111111111111111111111111111112"


class AccountKind(str, enum.Enum):
    NATIVE = "NATIVE"        # lamport balance
    FUNGIBLE = "FUNGIBLE"    # SPL token balance held by `address`


@dataclass(frozen=True)
class WatchedAccount:
    address: str
    kind: AccountKind
    vault_type: VaultType
    mint: Optional[str] = None      # FUNGIBLE only; None = any mint


# ───────── tx helpers ─────────

def account_keys(tx: Dict) -> List[str]:
    """Static keys followed by lookup-table loaded writable + readonly keys."""
    raw = tx["transaction"]["message"]["accountKeys"]
    keys = [k["pubkey"] if isinstance(k, dict) else str(k) for k in raw]
    loaded = (tx.get("meta") or {}).get("loadedAddresses") or {}
    keys.extend(loaded.get("writable") or [])
    keys.extend(loaded.get("readonly") or [])
    return keys


def event_time_ms(tx: Dict) -> int:
    bt = tx.get("blockTime")
    if bt:
        return int(bt) * 1000
    return int(time.time() * 1000)


def tx_signature(tx: Dict) -> str:
    sigs = tx["transaction"].get("signatures") or [""]
    return sigs[0]


def native_balances(tx: Dict, address: str) -> Optional[Tuple[int, int]]:
    keys = account_keys(tx)
    if address not in keys:
        return None
    i = keys.index(address)
    meta = tx["meta"]
    pre, post = meta["preBalances"], meta["postBalances"]
    if i >= len(pre) or i >= len(post):
        raise ValueError(f"balance tables shorter than account index {i}")
    return int(pre[i]), int(post[i])


def _owned_amount(rows: Iterable[Dict], owner: str, mint: Optional[str]) -> int:
    total = 0
    for row in rows or []:
        if row.get("owner") != owner:
            continue
        if mint and row.get("mint") != mint:
            continue
        total += int(row["uiTokenAmount"]["amount"])
    return total


def token_balances(tx: Dict, owner: str, mint: Optional[str] = None) -> Tuple[int, int]:
    # a missing row on either side means the token account was created or
    # closed in this tx, which is a zero balance
    meta = tx["meta"]
    return (_owned_amount(meta.get("preTokenBalances"), owner, mint),
            _owned_amount(meta.get("postTokenBalances"), owner, mint))


# ───────── extractor ─────────

class DeltaExtractor:
    def __init__(self, mint: str, bonding_curve: str):
        self.identities = {mint, bonding_curve}

    def is_relevant(self, tx: Dict) -> bool:
        return any(k in self.identities for k in account_keys(tx))

    def extract(self, tx: Optional[Dict], watched: WatchedAccount) -> Optional[FeeCandidate]:
        """FEE candidate when `watched` gained balance in a tx touching the token."""
        if not tx:
            return None
        try:
            if tx.get("meta") is None:
                log.warning("⚠️ transaction without meta, skipped")
                return None
            if tx["meta"].get("err") is not None:
                return None
            if not self.is_relevant(tx):
                return None

            if watched.kind is AccountKind.NATIVE:
                bal = native_balances(tx, watched.address)
                if bal is None:
                    return None
                before, after = bal
            elif watched.kind is AccountKind.FUNGIBLE:
                before, after = token_balances(tx, watched.address, watched.mint)
            else:
                raise ValueError(f"unknown account kind {watched.kind!r}")

            delta = after - before
            if delta <= 0:
                return None
            return FeeCandidate(
                event_type=EventType.FEE,
                vault_type=watched.vault_type,
                vault=watched.address,
                amount=delta,
                balance_before=before,
                balance_after=after,
                slot=int(tx.get("slot", 0)),
                timestamp=event_time_ms(tx),
                signature=tx_signature(tx),
            )
        except (KeyError, TypeError, ValueError, IndexError) as e:
            log.warning(f"⚠️ malformed transaction for {watched.vault_type.value} vault: {e!r}")
            return None


def balance_event(watched: WatchedAccount, before: int, after: int,
                  slot: int, timestamp: int) -> Optional[FeeCandidate]:
    """Classify a polled balance diff: up = FEE, down = CLAIM, flat = None.

    `amount` keeps the sign of the delta, so CLAIM amounts are negative.
    """
    delta = after - before
    if delta == 0:
        return None
    return FeeCandidate(
        event_type=EventType.FEE if delta > 0 else EventType.CLAIM,
        vault_type=watched.vault_type,
        vault=watched.address,
        amount=delta,
        balance_before=before,
        balance_after=after,
        slot=slot,
        timestamp=timestamp,
    )
